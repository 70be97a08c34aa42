"""
Byte-stream transports for the DA protocol engine.

The engine only needs three calls: read(n), write(data), close(). Anything
providing them (a USB CDC port, a UART, a test double) can carry a session.
"""
import logging
from typing import Optional

import serial
import serial.tools.list_ports

from mtkda.errors import TransportError

logger = logging.getLogger(__name__)

MTK_VID = 0x0E8D


class Transport:
    """Interface of an ordered byte stream owned by one session."""

    def read(self, length: int) -> bytes:
        """Read up to length bytes; fewer bytes means the read timed out."""
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def find_port(vid: int = MTK_VID) -> Optional[str]:
    """Pick first serial port matching VID."""
    for p in serial.tools.list_ports.comports():
        if p.vid == vid:
            return p.device
    return None


class SerialTransport(Transport):
    """pyserial backed transport (USB CDC ACM or UART)."""

    def __init__(self, port: str, baud: int = 115200, timeout: float = 2.0):
        self.port = port
        self.baud = baud
        self.timeout = timeout
        self.ser: Optional[serial.Serial] = None

    def open(self):
        try:
            self.ser = serial.Serial(self.port, self.baud, timeout=self.timeout, write_timeout=self.timeout)
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")
        logger.debug(f"Opened {self.port} at {self.baud} bps (timeout={self.timeout}s)")
        return self

    @classmethod
    def auto(cls, vid: int = MTK_VID, baud: int = 115200, timeout: float = 2.0) -> "SerialTransport":
        port = find_port(vid)
        if not port:
            raise TransportError(f"No serial port with VID 0x{vid:04X} found")
        return cls(port, baud, timeout).open()

    def read(self, length: int) -> bytes:
        if not self.ser:
            raise TransportError("Serial port not open")
        # pyserial reads up to length bytes before timeout
        buf = bytearray()
        try:
            while len(buf) < length:
                chunk = self.ser.read(length - len(buf))
                if not chunk:
                    break
                buf.extend(chunk)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")
        return bytes(buf)

    def write(self, data: bytes) -> None:
        if not self.ser:
            raise TransportError("Serial port not open")
        try:
            written = self.ser.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")
        if written is not None and written != len(data):
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")

    def close(self) -> None:
        if self.ser:
            self.ser.close()
            logger.debug(f"Closed {self.port}")
        self.ser = None

    def __enter__(self):
        if not self.ser:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
