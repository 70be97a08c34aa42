"""
XFlash (V5) command engine.

Every major command is a u32 id answered by a u32 status; parameter blocks are
acked the same way. DEVICE_CTRL (0x010009) opens a sub-command exchange:

  host DEVICE_CTRL -> status, host <code> -> status,
  then either host params -> status (setters)
  or device data -> status (getters).
"""
import logging
import struct
from enum import Enum
from typing import Iterable, Optional, Tuple

from mtkda import packet
from mtkda import status as st
from mtkda.config import SessionConfig
from mtkda.engine import CommandEngine, LockState, ProgressCallback, RebootMode
from mtkda.errors import DeviceError, ProtocolError, TransferError, UnsupportedCommand
from mtkda.partition import (Partition, Section, StorageInfo, parse_emmc_info, parse_ufs_info,
                             xflash_section)
from mtkda.progress import ProgressReport, xflash_events
from mtkda.status import TextDetail
from mtkda.transfer import (ChunkCallback, Direction, Transfer, TransferSpec, xflash_download,
                            xflash_trailing_status, xflash_upload)

logger = logging.getLogger(__name__)


class Cmd:
    DOWNLOAD = 0x010001
    UPLOAD = 0x010002
    FORMAT = 0x010003
    WRITE_DATA = 0x010004
    READ_DATA = 0x010005
    FORMAT_PARTITION = 0x010006
    SHUTDOWN = 0x010007
    BOOT_TO = 0x010008
    DEVICE_CTRL = 0x010009


class DevCtrl:
    # 0x04xxxx getters
    GET_EMMC_INFO = 0x040001
    GET_UFS_INFO = 0x040004
    GET_DA_VERSION = 0x040005
    GET_PACKET_LENGTH = 0x040007
    # 0x0Fxxxx, only answered once DA extensions are running
    CUSTOM_ACK = 0x0F0000
    CUSTOM_READMEM = 0x0F0001


EXT_ACK = bytes([0xA4, 0xA3, 0xA2, 0xA1])
UNSUPPORTED = (st.STATUS_UNSUPPORTED_CMD, st.STATUS_UNSUPPORTED_CTRL_CODE)
PROGRESS_WORDS = (st.STATUS_CONTINUE, st.STATUS_COMPLETE)


class State(Enum):
    IDLE = "idle"
    CMD_SENT = "cmd-sent"
    AWAITING_STATUS = "awaiting-status"
    DEVCTRL_SENT = "devctrl-sent"
    DEVCTRL_ACK = "devctrl-ack"
    SUBCMD_SENT = "subcmd-sent"
    SUBCMD_ACK = "subcmd-ack"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


def rw_params(storage: int, parttype: int, addr: int, length: int) -> bytes:
    """56-byte READ_DATA / WRITE_DATA / FORMAT block; the NAND extension stays zeroed."""
    return struct.pack("<IIQQ", storage, parttype, addr, length) + bytes(32)


def shutdown_params(bootmode: int, async_mode: int = 0, dl_bit: int = 0) -> bytes:
    return struct.pack("<IIIIII", async_mode, dl_bit, bootmode, 0, 0, 0)


class XFlashEngine(CommandEngine):
    generation = "V5"
    IDLE = State.IDLE
    FAILED = State.FAILED

    def __init__(self, stream, config: Optional[SessionConfig] = None,
                 partitions: Optional[Iterable[Partition]] = None):
        super().__init__(stream, config, partitions)
        self.state = State.IDLE
        self._pkt_len: Optional[Tuple[int, int]] = None

    # --- low level ---

    def _expect_ok(self, tag: str, context: str, echo: Optional[int] = None):
        value = packet.recv_u32(self.stream, tag)
        if value == st.STATUS_OK or (echo is not None and value == echo):
            return
        if value in PROGRESS_WORDS:
            raise ProtocolError(f"[{tag}] progress status 0x{value:08X} outside a progress report ({context})")
        detail = st.decode(value)
        if value in UNSUPPORTED:
            raise UnsupportedCommand(detail, context)
        raise DeviceError(detail, context)

    def _send_cmd(self, cmd: int, tag: str):
        self.state = State.CMD_SENT
        packet.send_u32(self.stream, cmd, tag)
        self.state = State.AWAITING_STATUS
        # Some DA builds echo the major opcode instead of 0
        self._expect_ok(tag, f"{tag} ack", echo=cmd)

    def _send_params(self, params: bytes, tag: str):
        packet.send(self.stream, params, tag=tag)
        self._expect_ok(tag, f"{tag} params")
        self.state = State.EXECUTING

    def _finish(self, value: int, tag: str):
        if value in PROGRESS_WORDS:
            raise ProtocolError(f"[{tag}] progress status 0x{value:08X} where the final status belongs")
        if value != st.STATUS_OK:
            raise DeviceError(st.decode(value), f"{tag} final status")
        self.state = State.COMPLETED
        self.state = State.IDLE

    def _open_devctrl(self, code: int, tag: str):
        self.state = State.DEVCTRL_SENT
        packet.send_u32(self.stream, Cmd.DEVICE_CTRL, tag)
        self._expect_ok(tag, "DEVICE_CTRL ack")
        self.state = State.DEVCTRL_ACK
        self.state = State.SUBCMD_SENT
        packet.send_u32(self.stream, code, tag)
        self._expect_ok(tag, f"devctrl 0x{code:06X} ack")
        self.state = State.SUBCMD_ACK

    def device_control(self, code: int, params: Optional[bytes] = None, tag: str = "") -> bytes:
        """
        Run one DEVICE_CTRL sub-command.
        With params the block is sent and its status is final; without, the
        device answers with one data packet followed by a status.
        """
        tag = tag or f"DEVCTRL_{code:06X}"
        with self._operation(tag):
            self._open_devctrl(code, tag)
            self.state = State.EXECUTING
            if params is not None:
                packet.send(self.stream, params, tag=tag)
                self._finish(packet.recv_u32(self.stream, tag), tag)
                return b""
            data = packet.decode(self.stream, tag).payload
            self._finish(packet.recv_u32(self.stream, tag), tag)
            return data

    # --- device info ---

    def get_packet_length(self) -> Tuple[int, int]:
        """(write_len, read_len) with config overrides applied."""
        write_len, read_len = self.config.write_len, self.config.read_len
        if write_len is None or read_len is None:
            if self._pkt_len is None:
                payload = self.device_control(DevCtrl.GET_PACKET_LENGTH, tag="CMD_GET_PACKET_LENGTH")
                with self._operation("CMD_GET_PACKET_LENGTH"):
                    if len(payload) != 8:
                        raise ProtocolError(f"GET_PACKET_LENGTH returned {len(payload)} bytes")
                self._pkt_len = struct.unpack("<II", payload)
            write_len = write_len or self._pkt_len[0]
            read_len = read_len or self._pkt_len[1]
        logger.debug(f"[STREAM] Using write_len={write_len} read_len={read_len}")
        return write_len, read_len

    def get_da_version(self) -> str:
        data = self.device_control(DevCtrl.GET_DA_VERSION, tag="CMD_GET_DA_VERSION")
        return data.rstrip(b"\x00").decode(errors="ignore").strip()

    # --- flash access ---

    def _section(self, section: Section) -> Tuple[int, int]:
        return xflash_section(self.storage, section)

    def read_flash(self, address: int, length: int, section: Section = Section.USER,
                   on_chunk: Optional[ChunkCallback] = None) -> bytes:
        tag = "CMD_READ_DATA"
        _, read_len = self.get_packet_length()
        with self._operation(tag):
            self._send_cmd(Cmd.READ_DATA, tag)
            self._send_params(rw_params(*self._section(section), address, length), tag)
            self.transfer = Transfer(TransferSpec(Direction.DEVICE_TO_HOST, length, read_len), tag, on_chunk)
            data = xflash_upload(self.stream, self.transfer)
            self._finish(xflash_trailing_status(self.stream, self.transfer), tag)
            return data

    def write_flash(self, address: int, data: bytes, section: Section = Section.USER,
                    on_chunk: Optional[ChunkCallback] = None, on_progress: Optional[ProgressCallback] = None):
        """WRITE_DATA has no progress phase on XFlash; on_progress is never called."""
        tag = "CMD_WRITE_DATA"
        write_len, _ = self.get_packet_length()
        with self._operation(tag):
            self._send_cmd(Cmd.WRITE_DATA, tag)
            self._send_params(rw_params(*self._section(section), address, len(data)), tag)
            self.transfer = Transfer(TransferSpec(Direction.HOST_TO_DEVICE, len(data), write_len), tag, on_chunk)
            xflash_download(self.stream, self.transfer, data)
            self._finish(xflash_trailing_status(self.stream, self.transfer), tag)
        logger.info(f"Wrote 0x{len(data):X} bytes at 0x{address:X} ({section.value})")

    def erase_flash(self, address: int, length: int, section: Section = Section.USER,
                    on_progress: Optional[ProgressCallback] = None):
        tag = "CMD_FORMAT"
        with self._operation(tag):
            self._send_cmd(Cmd.FORMAT, tag)
            self._send_params(rw_params(*self._section(section), address, length), tag)
            report = ProgressReport(xflash_events(self.stream, tag), self._progress_sink(on_progress))
            done = report.drain()
            self._finish(done.status, tag)
        logger.info(f"Erased 0x{length:X} bytes at 0x{address:X} ({section.value})")

    # --- storage and partitions ---

    def _detect_storage(self) -> Optional[StorageInfo]:
        """Ask for eMMC info, then UFS info; a DA without that storage answers type 0 or an error status."""
        for code, tag, parse in ((DevCtrl.GET_EMMC_INFO, "CMD_GET_EMMC_INFO", parse_emmc_info),
                                 (DevCtrl.GET_UFS_INFO, "CMD_GET_UFS_INFO", parse_ufs_info)):
            try:
                data = self.device_control(code, tag=tag)
            except DeviceError as e:
                logger.debug(f"[{tag}] {e}")
                continue
            with self._operation(tag):
                info = parse(data)
            if info is not None:
                return info
        return None

    def read_partition(self, name: str, on_chunk: Optional[ChunkCallback] = None) -> bytes:
        part = self.find_partition(name)
        return self.read_flash(part.start, part.size, part.section, on_chunk)

    def write_partition(self, name: str, data: bytes, on_chunk: Optional[ChunkCallback] = None,
                        on_progress: Optional[ProgressCallback] = None):
        part = self.find_partition(name)
        if len(data) > part.size:
            raise ValueError(f"{len(data)} bytes do not fit partition {name} (0x{part.size:X})")
        self.write_flash(part.start, data, part.section, on_chunk, on_progress)

    def format_partition(self, name: str, on_progress: Optional[ProgressCallback] = None):
        part = self.find_partition(name)
        self.erase_flash(part.start, part.size, part.section, on_progress)

    # --- power ---

    def _shutdown(self, bootmode: int, tag: str):
        with self._operation(tag):
            self._send_cmd(Cmd.SHUTDOWN, tag)
            # Device drops off the bus after acking the block, no final status
            self._send_params(shutdown_params(bootmode), tag)
            self.state = State.IDLE

    def shutdown(self):
        self._shutdown(RebootMode.NORMAL, "CMD_SHUTDOWN")

    def reboot(self, mode: RebootMode = RebootMode.NORMAL):
        logger.info(f"Rebooting to {RebootMode(mode).name.lower()}")
        self._shutdown(int(mode), "CMD_SHUTDOWN")

    # --- extensions ---

    def probe_extensions(self):
        """Raise UnsupportedCommand unless DA extensions answer the custom ack."""
        ack = self.device_control(DevCtrl.CUSTOM_ACK, tag="CMD_EXT_ACK")
        if ack[:4] != EXT_ACK:
            raise UnsupportedCommand(TextDetail(f"invalid extension ack {ack[:4].hex(' ')}"), "CMD_EXT_ACK")
        logger.info(f"DA extensions ack: {ack[:4].hex(' ').upper()}")

    def peek(self, address: int, length: int) -> bytes:
        tag = "CMD_EXT_READMEM"
        with self._operation(tag):
            self._open_devctrl(DevCtrl.CUSTOM_READMEM, tag)
            self.state = State.EXECUTING
            packet.send(self.stream, struct.pack("<Q", address), tag=tag)
            packet.send_u32(self.stream, length, tag)
            data = packet.decode(self.stream, tag).payload
            self._finish(packet.recv_u32(self.stream, tag), tag)
            if len(data) != length:
                raise TransferError(f"[{tag}] read {len(data)} of {length} bytes at 0x{address:X}",
                                    len(data), length, clean=True)
            return data

    def set_seccfg(self, lock_state: LockState, payload: bytes, on_chunk: Optional[ChunkCallback] = None):
        self.probe_extensions()
        logger.info(f"Writing seccfg ({lock_state.value}, {len(payload)} bytes)")
        self.write_partition("seccfg", payload, on_chunk=on_chunk)
