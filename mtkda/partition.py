"""Storage sections and the partition tables the engines need to resolve names."""
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from xml.etree import ElementTree

from mtkda.errors import ProtocolError
from mtkda.xmlmsg import get_field, parse_hex

GPT_SIGNATURE = b"EFI PART"
# Primary GPT fits in the first 32 KiB of the user area for 512 and 4096 byte sectors
PGPT_SIZE = 0x8000


class Storage(Enum):
    EMMC = "emmc"
    UFS = "ufs"


class Section(Enum):
    BOOT1 = "boot1"
    BOOT2 = "boot2"
    RPMB = "rpmb"
    USER = "user"


# V5 (storage id, partition type) and V6 partition names per section
_SECTIONS = {
    Storage.EMMC: {
        Section.BOOT1: (0x1, 1, "EMMC-BOOT1"),
        Section.BOOT2: (0x1, 2, "EMMC-BOOT2"),
        Section.RPMB: (0x1, 3, "EMMC-RPMB"),
        Section.USER: (0x1, 8, "EMMC-USER"),
    },
    Storage.UFS: {
        Section.BOOT1: (0x30, 0, "UFS-LUA0"),
        Section.BOOT2: (0x30, 1, "UFS-LUA1"),
        Section.USER: (0x30, 2, "UFS-LUA2"),
        Section.RPMB: (0x30, 3, "UFS-LUA3"),
    },
}


def xflash_section(storage: Storage, section: Section) -> Tuple[int, int]:
    storage_id, parttype, _ = _SECTIONS[storage][section]
    return storage_id, parttype


def xml_section(storage: Storage, section: Section) -> str:
    return _SECTIONS[storage][section][2]


@dataclass(frozen=True)
class Partition:
    name: str
    start: int
    size: int
    section: Section = Section.USER


@dataclass(frozen=True)
class StorageInfo:
    """What the DA reports about the attached flash. Sizes in bytes."""
    kind: Storage
    block_size: int
    boot1_size: int
    boot2_size: int
    user_size: int


# GET_EMMC_INFO: type, block size, then boot1, boot2, rpmb, gp1..gp4, user sizes
EMMC_INFO = struct.Struct("<II8Q")
# GET_UFS_INFO: type, block size, then LU0 (boot1), LU1 (boot2), LU2 (user) sizes
UFS_INFO = struct.Struct("<II3Q")


def parse_emmc_info(data: bytes) -> Optional[StorageInfo]:
    """XFlash GET_EMMC_INFO payload; None when the device has no eMMC."""
    if len(data) < EMMC_INFO.size:
        raise ProtocolError(f"GET_EMMC_INFO returned {len(data)} bytes")
    kind, block, boot1, boot2, _rpmb, _gp1, _gp2, _gp3, _gp4, user = EMMC_INFO.unpack_from(data)
    if kind == 0:
        return None
    return StorageInfo(Storage.EMMC, block, boot1, boot2, user)


def parse_ufs_info(data: bytes) -> Optional[StorageInfo]:
    """XFlash GET_UFS_INFO payload; None when the device has no UFS."""
    if len(data) < UFS_INFO.size:
        raise ProtocolError(f"GET_UFS_INFO returned {len(data)} bytes")
    kind, block, lu0, lu1, lu2 = UFS_INFO.unpack_from(data)
    if kind == 0:
        return None
    return StorageInfo(Storage.UFS, block, lu0, lu1, lu2)


def parse_hw_info(data) -> Optional[StorageInfo]:
    """CMD:GET-HW-INFO <da_hw_info> document; None for storage we cannot drive (NAND, NOR)."""
    storage = get_field(data, "storage").upper()
    if storage == "EMMC":
        return StorageInfo(
            Storage.EMMC,
            parse_hex(get_field(data, "block_size"), "block_size"),
            parse_hex(get_field(data, "boot1_size"), "boot1_size"),
            parse_hex(get_field(data, "boot2_size"), "boot2_size"),
            parse_hex(get_field(data, "user_size"), "user_size"),
        )
    if storage == "UFS":
        return StorageInfo(
            Storage.UFS,
            parse_hex(get_field(data, "block_size"), "block_size"),
            parse_hex(get_field(data, "lua0_size"), "lua0_size"),
            parse_hex(get_field(data, "lua1_size"), "lua1_size"),
            parse_hex(get_field(data, "lua2_size"), "lua2_size"),
        )
    return None


def boot_partitions(info: Optional[StorageInfo]) -> List[Partition]:
    """Entries that exist outside the GPT: preloader copies and the primary GPT itself."""
    parts = []
    if info is not None:
        parts.append(Partition("preloader", 0, info.boot1_size, Section.BOOT1))
        parts.append(Partition("preloader_backup", 0, info.boot2_size, Section.BOOT2))
    parts.append(Partition("PGPT", 0, PGPT_SIZE))
    return parts


def sgpt_partition(info: Optional[StorageInfo]) -> Optional[Partition]:
    """Backup GPT occupies the last 32 KiB of the user section."""
    if info is None or info.user_size <= PGPT_SIZE:
        return None
    return Partition("SGPT", info.user_size - PGPT_SIZE, PGPT_SIZE)


def _find_gpt_header(data: bytes) -> Tuple[int, int]:
    """(header offset, sector size); primary sits at LBA1, backup in the last sector."""
    for sector in (512, 4096):
        if data[sector:sector + 8] == GPT_SIGNATURE:
            return sector, sector
    for sector in (512, 4096):
        if len(data) >= sector and data[len(data) - sector:len(data) - sector + 8] == GPT_SIGNATURE:
            return len(data) - sector, sector
    raise ProtocolError("No GPT header found in partition table dump")


def parse_gpt(data: bytes, base: int = 0) -> List[Partition]:
    """
    Parse a GPT dump. base is the byte offset of data within the user section:
    0 for the primary GPT, user_size - PGPT_SIZE for the backup.
    """
    hdr_off, sector = _find_gpt_header(data)
    hdr = data[hdr_off:hdr_off + 92]
    entries_lba, num_entries, entry_size = struct.unpack_from("<QII", hdr, 72)
    start = entries_lba * sector - base
    if start < 0 or entry_size < 128:
        raise ProtocolError(f"GPT entry array at LBA {entries_lba} is outside the dump")
    parts = []
    for i in range(num_entries):
        off = start + i * entry_size
        entry = data[off:off + entry_size]
        if len(entry) < 128:
            break
        type_guid = entry[:16]
        if type_guid == b"\x00" * 16:
            continue
        first_lba, last_lba = struct.unpack_from("<QQ", entry, 32)
        name = entry[56:128].decode("utf-16-le", errors="ignore").split("\x00", 1)[0]
        parts.append(Partition(name, first_lba * sector, (last_lba - first_lba + 1) * sector))
    return parts


def parse_xml_table(text: str) -> List[Partition]:
    """Parse <pt><name/><start/><size/></pt> records from CMD:READ-PARTITION-TABLE."""
    body = text.rstrip("\x00")
    if body.startswith("<?xml"):
        body = body[body.find("?>") + 2:]
    try:
        top = ElementTree.fromstring(f"<table>{body}</table>")
    except ElementTree.ParseError as e:
        raise ProtocolError(f"Malformed partition table: {e}")
    parts = []
    for pt in top.iter("pt"):
        name = (pt.findtext("name") or "").strip()
        size = (pt.findtext("size") or "").strip()
        if not name or not size:
            continue
        start = (pt.findtext("start") or "0").strip()
        parts.append(Partition(name, parse_hex(start, f"{name} start"), parse_hex(size, f"{name} size")))
    return parts
