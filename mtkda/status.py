"""
XFlash status words and V6 error text.

A V5 status is a 32-bit word laid out as:

  bits 31..30  severity (Success, Info, Warning, Error)
  bits 29..24  reserved, kept as-is
  bits 23..16  domain (Common, Security, Library, Device, Host, BROM, DA, Preloader)
  bits 15..0   domain specific code

Example: 0xC0070004 -> Error | DA (7) << 16 | 0x4
"""
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

STATUS_OK = 0x00000000
STATUS_CONTINUE = 0x40040004
STATUS_COMPLETE = 0x40040005
STATUS_UNSUPPORTED_CMD = 0xC0010003
STATUS_UNSUPPORTED_CTRL_CODE = 0xC0010004


class Severity(IntEnum):
    SUCCESS = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


class Domain(IntEnum):
    UNKNOWN = 0
    COMMON = 1
    SECURITY = 2
    LIBRARY = 3
    DEVICE = 4
    HOST = 5
    BROM = 6
    DA = 7
    PRELOADER = 8


ERROR_NAMES = {
    # Common
    0xC0010001: "Generic error",
    0xC0010002: "Abort",
    0xC0010003: "Unsupported command",
    0xC0010004: "Unsupported devctrl code",
    0xC0010005: "Protocol error",
    0xC0010006: "Protocol buffer overflow",
    0xC0010007: "Insufficient buffer",
    0xC0010008: "USB SCAN error",
    0xC0010009: "Invalid hsession",
    0xC001000A: "Invalid session",
    0xC001000B: "Invalid stage",
    0xC001000C: "Not implemented",
    0xC001000D: "File not found",
    0xC001000E: "Open file error",
    0xC001000F: "Write file error",
    0xC0010010: "Read file error",
    0xC0010011: "Create File error / Unsupported Version",
    # Security
    0xC0020001: "SEC: Rom info not found",
    0xC0020002: "SEC: Cust name not found",
    0xC0020003: "SEC: Device not supported",
    0xC0020004: "SEC: Download forbidden (region is not whitelisted)",
    0xC0020005: "SEC: Image too large",
    0xC0020006: "SEC: Preloader verify failed",
    0xC0020007: "SEC: Image verify failed",
    0xC0020008: "SEC: Hash operation failed",
    0xC0020009: "SEC: Hash binding check failed",
    0xC002000A: "SEC: Invalid buffer",
    0xC002000B: "SEC: Binding hash not available",
    0xC002000C: "SEC: Write data not allowed (region is not whitelisted)",
    0xC002000D: "SEC: Format not allowed (region is not whitelisted)",
    0xC002002D: "SEC: Anti rollback violation",
    0xC002002E: "SEC: SECCFG not found",
    0xC002002F: "SEC: SECCFG magic is incorrect",
    0xC0020030: "SEC: SECCFG is invalid",
    0xC0020049: "SEC: Remote security policy disabled",
    0xC002004C: "SEC: DA Anti-Rollback error. DA version less than OTP version.",
    0xC002005C: "SEC: Failed getting seccfg lockstate",
    0xC002005E: "SEC: Lockstate is inconsistent",
    # Library
    0xC0030001: "Library: Scatter file invalid",
    0xC0030002: "Library: DA file invalid",
    0xC0030003: "Library: DA selection error",
    0xC0030004: "Library: Preloader invalid",
    0xC0030006: "Library: Storage mismatch",
    0xC0030007: "Library: Invalid parameters",
    0xC0030008: "Library: Invalid GPT",
    0xC0030009: "Library: Invalid PMT",
    0xC003000E: "Library: Partition table doesn't exist",
    # Device
    0xC0040001: "Device: Unsupported operation",
    0xC0040002: "Device: Thread error",
    0xC0040003: "Device: Checksum error",
    0xC0040004: "Device: Unknown sparse image format",
    0xC0040005: "Device: Unknown sparse chunk type",
    0xC0040006: "Device: Partition not found",
    0xC0040007: "Device: Failed to read partition table",
    0xC0040008: "Device: Exceeded maximum partition number",
    0xC0040009: "Device: Unknown storage type",
    0xC004000A: "Device: DRAM test failed",
    0xC004000B: "Device: Exceeded available range",
    0xC004000C: "Device: Failed to write sparse image",
    0xC0040030: "Device: MMC error",
    0xC0040040: "Device: NAND error",
    0xC0040043: "Device: NAND bad block",
    0xC0040044: "Device: NAND erase failed",
    0xC0040060: "Device: UFS error",
    # Host
    0xC0050001: "Host: Device control exception",
    0xC0050002: "Host: Shutdown command exception",
    0xC0050003: "Host: Download exception",
    0xC0050004: "Host: Upload exception",
    0xC0050005: "Host: External RAM exception",
    0xC0050006: "Host: Notify switch USB speed exception",
    0xC0050007: "Host: Read data exception",
    0xC0050008: "Host: Write data exception",
    0xC0050009: "Host: Format exception",
    # BROM
    0xC0060001: "BROM: Start command failed",
    0xC0060002: "BROM: Failed to get BBChip HW version",
    0xC0060003: "BROM: Send DA command failed",
    0xC0060004: "BROM: Failed to jump to DA",
    0xC0060005: "BROM: Command failed",
    0xC0060006: "BROM: Stage callback failed",
    # DA
    0xC0070001: "DA: Version mismatch",
    0xC0070002: "DA: Not found",
    0xC0070003: "DA: Section not found",
    0xC0070004: "DA: Hash mismatch. DA2 hash does not match hash in DA1",
    0xC0070005: "DA: Exceeded maximum allowed number",
}


@dataclass(frozen=True)
class Status:
    """Decoded V5 status word."""
    severity: Severity
    domain: Union[Domain, int]
    code: int
    reserved: int = 0

    @property
    def value(self) -> int:
        return (int(self.severity) << 30) | (self.reserved << 24) | (int(self.domain) << 16) | self.code

    @property
    def ok(self) -> bool:
        return self.value == STATUS_OK

    @property
    def name(self) -> Optional[str]:
        return ERROR_NAMES.get(self.value)

    def __str__(self):
        dom = self.domain.name if isinstance(self.domain, Domain) else f"0x{self.domain:02X}"
        text = self.name or f"{self.severity.name} {dom} code 0x{self.code:X}"
        return f"{text} (0x{self.value:08X})"


@dataclass(frozen=True)
class TextDetail:
    """Free-text error carried by a V6 message field."""
    message: str

    def __str__(self):
        return self.message


ErrorDetail = Union[Status, TextDetail]


def decode(value: int) -> Status:
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"Status out of u32 range: {value}")
    severity = Severity(value >> 30)
    reserved = (value >> 24) & 0x3F
    raw_domain = (value >> 16) & 0xFF
    try:
        domain = Domain(raw_domain)
    except ValueError:
        domain = raw_domain
    return Status(severity, domain, value & 0xFFFF, reserved)


def decode_text(message: str) -> TextDetail:
    return TextDetail(message.rstrip("\x00"))
