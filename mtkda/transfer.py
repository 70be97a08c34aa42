"""
Chunked data movement once a transfer command has been accepted.

Every loop is lockstep: exactly one unacknowledged unit in flight. A transfer
only succeeds when the bytes moved equal the announced total; no chunk is
ever retried.
"""
import logging
import struct
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from mtkda import packet
from mtkda.errors import ProtocolError, TransferError
from mtkda.xmlmsg import Token, parse_value_token, value_token

logger = logging.getLogger(__name__)

ACK_ZERO = struct.pack("<I", 0)

ChunkCallback = Callable[[int, int], None]


class Direction(Enum):
    HOST_TO_DEVICE = "host-to-device"
    DEVICE_TO_HOST = "device-to-host"


@dataclass(frozen=True)
class TransferSpec:
    direction: Direction
    total_size: int
    chunk_size: int

    @property
    def chunk_count(self) -> int:
        return -(-self.total_size // self.chunk_size) if self.chunk_size else 0


class Transfer:
    """Bytes-so-far bookkeeping for one TransferSpec."""

    def __init__(self, spec: TransferSpec, tag: str = "XFER", on_chunk: Optional[ChunkCallback] = None):
        self.spec = spec
        self.tag = tag
        self.on_chunk = on_chunk
        self.moved = 0
        self.chunks = 0
        self._started = time.time()

    @property
    def remaining(self) -> int:
        return self.spec.total_size - self.moved

    def advance(self, n: int):
        if n <= 0:
            raise TransferError(f"[{self.tag}] empty chunk at 0x{self.moved:X}", self.moved, self.spec.total_size)
        if self.spec.chunk_size and n > self.spec.chunk_size:
            raise TransferError(
                f"[{self.tag}] chunk of {n} bytes exceeds chunk size {self.spec.chunk_size}",
                self.moved, self.spec.total_size)
        if n > self.remaining:
            raise TransferError(
                f"[{self.tag}] chunk overruns transfer: {self.moved}+{n} > {self.spec.total_size}",
                self.moved, self.spec.total_size)
        self.moved += n
        self.chunks += 1
        if self.on_chunk:
            self.on_chunk(self.moved, self.spec.total_size)

    def finish(self):
        if self.moved != self.spec.total_size:
            raise TransferError(
                f"[{self.tag}] moved {self.moved} of {self.spec.total_size} bytes",
                self.moved, self.spec.total_size)
        dur = max(1e-6, time.time() - self._started)
        rate = self.moved / dur / (1024 * 1024)
        arrow = "TX" if self.spec.direction is Direction.HOST_TO_DEVICE else "RX"
        logger.debug(f"[{self.tag}] {arrow} {self.moved} bytes in {self.chunks} chunks, {dur:.2f}s ({rate:.2f} MiB/s)")


def checksum16(data: bytes) -> int:
    return sum(data) & 0xFFFF


# --- V5 / XFlash ---

def xflash_upload(stream, transfer: Transfer) -> bytes:
    """Device -> host: data packet, host acks with u32 zero, repeat."""
    chunks = []
    while transfer.remaining > 0:
        pkt = packet.decode(stream, transfer.tag)
        transfer.advance(pkt.length)
        chunks.append(pkt.payload)
        packet.send(stream, ACK_ZERO, tag=transfer.tag)
    transfer.finish()
    return b"".join(chunks)


def xflash_download(stream, transfer: Transfer, data: bytes):
    """Host -> device: flag, checksum, data; device acks each chunk with status zero."""
    if len(data) != transfer.spec.total_size:
        raise ValueError(f"Payload is {len(data)} bytes, transfer announced {transfer.spec.total_size}")
    step = transfer.spec.chunk_size or max(len(data), 1)
    for pos in range(0, len(data), step):
        chunk = data[pos:pos + step]
        packet.send(stream, ACK_ZERO, tag=transfer.tag)
        packet.send(stream, struct.pack("<I", checksum16(chunk)), tag=transfer.tag)
        packet.send(stream, chunk, tag=transfer.tag)
        try:
            st = packet.recv_u32(stream, transfer.tag)
        except ProtocolError as e:
            raise TransferError(f"[{transfer.tag}] bad chunk ack at 0x{pos:X}: {e}", transfer.moved,
                                transfer.spec.total_size)
        if st != 0:
            raise TransferError(f"[{transfer.tag}] chunk at 0x{pos:X} rejected: 0x{st:08X}", transfer.moved,
                                transfer.spec.total_size)
        transfer.advance(len(chunk))
    transfer.finish()


def xflash_trailing_status(stream, transfer: Transfer) -> int:
    """Final status after a V5 stream; extra data here means the peer overran."""
    pkt = packet.decode(stream, transfer.tag)
    if pkt.length == 4:
        value = struct.unpack("<I", pkt.payload)[0]
        return 0 if value == packet.MAGIC else value
    raise TransferError(
        f"[{transfer.tag}] {pkt.length} bytes after transfer of {transfer.spec.total_size} completed",
        transfer.moved + pkt.length, transfer.spec.total_size)


# --- V6 / XML ---

def _expect(stream, token: str, transfer: Transfer):
    text = packet.payload_text(packet.decode(stream, transfer.tag))
    if text != token:
        raise TransferError(f"[{transfer.tag}] expected {token!r}, got {text!r} at 0x{transfer.moved:X}",
                            transfer.moved, transfer.spec.total_size)


def xml_upload_size(stream, tag: str = "UPLOAD-FILE") -> int:
    """Device announces the upload size with OK@0x<size>; host acks."""
    text = packet.payload_text(packet.decode(stream, tag))
    try:
        size = parse_value_token(text)
    except ProtocolError as e:
        raise TransferError(f"[{tag}] no size announcement: {e}")
    packet.send_text(stream, Token.OK, tag)
    return size


def xml_upload(stream, transfer: Transfer) -> bytes:
    """Device -> host, per chunk: device OK, host OK, device data, host OK."""
    chunks = []
    while transfer.remaining > 0:
        _expect(stream, Token.OK, transfer)
        packet.send_text(stream, Token.OK, transfer.tag)
        pkt = packet.decode(stream, transfer.tag)
        transfer.advance(pkt.length)
        chunks.append(pkt.payload)
        packet.send_text(stream, Token.OK, transfer.tag)
    transfer.finish()
    return b"".join(chunks)


def xml_download(stream, transfer: Transfer, data: bytes):
    """Host -> device: host OK@0x<size>, device OK, then per chunk OK@0x<offset>, OK, data, OK."""
    if len(data) != transfer.spec.total_size:
        raise ValueError(f"Payload is {len(data)} bytes, transfer announced {transfer.spec.total_size}")
    packet.send_text(stream, value_token(len(data)), transfer.tag)
    _expect(stream, Token.OK, transfer)
    step = transfer.spec.chunk_size or max(len(data), 1)
    for pos in range(0, len(data), step):
        chunk = data[pos:pos + step]
        packet.send_text(stream, value_token(pos), transfer.tag)
        _expect(stream, Token.OK, transfer)
        packet.send(stream, chunk, tag=transfer.tag)
        _expect(stream, Token.OK, transfer)
        transfer.advance(len(chunk))
    transfer.finish()
