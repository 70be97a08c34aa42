"""Framing shared by XFlash (V5) and XML (V6) DA: 12-byte header + payload."""
import struct
from dataclasses import dataclass
from enum import IntEnum

from mtkda.errors import FramingError, ProtocolError
from mtkda.log import trace

MAGIC = 0xFEEEEEEF
HEADER = struct.Struct("<III")
HEADER_LEN = HEADER.size
# Host side write granularity for large payloads
WRITE_CHUNK = 4096


class DataType(IntEnum):
    PROTOCOL_FLOW = 1
    MESSAGE = 2


@dataclass(frozen=True)
class Packet:
    data_type: int
    payload: bytes
    magic: int = MAGIC

    @property
    def length(self) -> int:
        return len(self.payload)


def encode(data_type: int, payload: bytes) -> bytes:
    return HEADER.pack(MAGIC, int(data_type), len(payload)) + bytes(payload)


def _read_exact(stream, length: int, what: str) -> bytes:
    data = stream.read(length) if length else b""
    if len(data) != length:
        raise FramingError(f"Truncated {what}: got {len(data)} of {length} bytes")
    return data


def decode(stream, tag: str = "") -> Packet:
    """Read exactly one packet from stream; trailing bytes are left unread."""
    hdr = _read_exact(stream, HEADER_LEN, "header")
    magic, dtype, length = HEADER.unpack(hdr)
    if magic != MAGIC:
        raise FramingError(f"Bad magic 0x{magic:08X} in header {hdr.hex()}")
    body = _read_exact(stream, length, "payload")
    trace("RX", hdr + body, tag)
    return Packet(dtype, body, magic)


def send(stream, payload: bytes, data_type: int = DataType.PROTOCOL_FLOW, tag: str = ""):
    """Standard packager: header, then body in WRITE_CHUNK pieces."""
    payload = bytes(payload)
    hdr = HEADER.pack(MAGIC, int(data_type), len(payload))
    trace("TX", hdr + payload, tag)
    stream.write(hdr)
    for i in range(0, len(payload), WRITE_CHUNK):
        stream.write(payload[i:i + WRITE_CHUNK])


def send_u32(stream, value: int, tag: str = ""):
    send(stream, struct.pack("<I", value), tag=tag)


def recv_u32(stream, tag: str = "") -> int:
    """Read a status packet. u16 bodies are widened, an echoed MAGIC means success."""
    pkt = decode(stream, tag)
    if pkt.length == 4:
        value = struct.unpack("<I", pkt.payload)[0]
        return 0 if value == MAGIC else value
    if pkt.length == 2:
        return struct.unpack("<H", pkt.payload)[0]
    raise ProtocolError(f"Expected status packet, got {pkt.length} bytes: {pkt.payload[:16].hex(' ')}")


def send_text(stream, text: str, tag: str = ""):
    """V6 strings travel NUL terminated."""
    send(stream, text.encode("utf-8") + b"\x00", tag=tag)


def payload_text(packet: Packet) -> str:
    return packet.payload.rstrip(b"\x00").decode("utf-8", errors="replace")
