"""
One DA connection: picks the protocol generation once, then runs at most one
operation at a time against it.

Cancellation requires session teardown. The protocol has no abort message, so
an interrupted transfer leaves the device mid-command; close the session and
reboot the device before reconnecting.
"""
import logging
import struct
import threading
from typing import Callable, Iterable, List, Optional

from mtkda import packet
from mtkda.config import SessionConfig
from mtkda.engine import CommandEngine, LockState, ProgressCallback, RebootMode
from mtkda.errors import DAError, SessionBusyError, SessionClosedError
from mtkda.log import setup_logging
from mtkda.partition import Partition, Section, StorageInfo
from mtkda.transfer import ChunkCallback, Transfer
from mtkda.transport import SerialTransport, Transport
from mtkda.xflash import Cmd, DevCtrl, XFlashEngine
from mtkda.xmlda import HostRequestHandler, XmlEngine

logger = logging.getLogger(__name__)

PROTOCOLS = ("auto", "xflash", "xml")
# Replies that can only come from an XML DA
V6_PREFIXES = (b"OK", b"ERR", b"<")


def detect_protocol(transport: Transport) -> str:
    """
    Probe with DEVICE_CTRL + GET_DA_VERSION. An XML DA answers with a text
    token or document (OK, ERR..., <?xml), an XFlash DA with a u32 status.
    """
    tag = "HS"
    packet.send_u32(transport, Cmd.DEVICE_CTRL, tag)
    pkt = packet.decode(transport, tag)
    # ERR\0 is four bytes too, so look at the content before the length
    if pkt.payload.lstrip().startswith(V6_PREFIXES) or pkt.length not in (2, 4):
        reply = packet.payload_text(pkt)
        logger.info(f"Device is in DA mode (XML, probe answered {reply[:32]!r})")
        return "xml"
    fmt = "<I" if pkt.length == 4 else "<H"
    value = struct.unpack(fmt, pkt.payload)[0]
    if value not in (0, packet.MAGIC):
        logger.warning(f"DEVICE_CTRL probe status 0x{value:08X}")
        return "xflash"
    packet.send_u32(transport, DevCtrl.GET_DA_VERSION, tag)
    value = packet.recv_u32(transport, tag)
    if value != 0:
        logger.warning(f"GET_DA_VERSION status 0x{value:08X}")
        return "xflash"
    ver = packet.decode(transport, tag).payload.rstrip(b"\x00").decode(errors="ignore").strip()
    value = packet.recv_u32(transport, tag)
    if value == 0:
        logger.info(f"Device is in DA mode (XFlash, version: {ver})")
    return "xflash"


class Session:
    """Uniform operation surface over the XFlash or XML engine."""

    def __init__(self, transport: Transport, engine: CommandEngine):
        self.transport = transport
        self.engine = engine
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, transport: Transport, protocol: str = "auto", handler: Optional[HostRequestHandler] = None,
             config: Optional[SessionConfig] = None, partitions: Optional[Iterable[Partition]] = None) -> "Session":
        if protocol not in PROTOCOLS:
            raise ValueError(f"Unknown protocol {protocol!r}, expected one of {', '.join(PROTOCOLS)}")
        config = config or SessionConfig()
        if protocol == "auto":
            try:
                protocol = detect_protocol(transport)
            except DAError:
                transport.close()
                raise
        if protocol == "xflash":
            engine = XFlashEngine(transport, config, partitions)
        else:
            engine = XmlEngine(transport, config, partitions, handler)
        logger.info(f"Session open ({engine.generation})")
        return cls(transport, engine)

    @classmethod
    def connect(cls, port: Optional[str] = None, protocol: str = "auto",
                handler: Optional[HostRequestHandler] = None, config: Optional[SessionConfig] = None,
                partitions: Optional[Iterable[Partition]] = None) -> "Session":
        """Open a pyserial port (first MTK port when none is given) and start a session on it."""
        config = config or SessionConfig()
        setup_logging(config.debug)
        if port:
            transport = SerialTransport(port, timeout=config.timeout).open()
        else:
            logger.info("Scanning MTK device...")
            transport = SerialTransport.auto(timeout=config.timeout)
        logger.info(f"Connected {transport.port}")
        return cls.open(transport, protocol, handler, config, partitions)

    # --- lifecycle ---

    @property
    def generation(self) -> str:
        return self.engine.generation

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def transfer_state(self) -> Optional[Transfer]:
        """Transfer currently moving data, if any."""
        return self.engine.transfer

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.engine.transfer = None
        self.transport.close()
        logger.info("Session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _run(self, name: str, fn: Callable, *args, **kwargs):
        if self._closed:
            raise SessionClosedError(f"{name}: session is closed")
        if not self._lock.acquire(blocking=False):
            raise SessionBusyError(f"{name}: another operation is in flight")
        try:
            return fn(*args, **kwargs)
        except DAError as e:
            if e.fatal:
                logger.error(f"{name}: {e}; closing session")
                self.close()
            raise
        finally:
            self._lock.release()

    # --- operations ---

    def storage_info(self) -> Optional[StorageInfo]:
        return self._run("storage_info", self.engine.storage_info)

    def list_partitions(self, refresh: bool = False) -> List[Partition]:
        return self._run("list_partitions", self.engine.list_partitions, refresh)

    def read_partition(self, name: str, on_chunk: Optional[ChunkCallback] = None) -> bytes:
        return self._run("read_partition", self.engine.read_partition, name, on_chunk)

    def read_flash(self, address: int, length: int, section: Section = Section.USER,
                   on_chunk: Optional[ChunkCallback] = None) -> bytes:
        return self._run("read_flash", self.engine.read_flash, address, length, section, on_chunk)

    def read_all(self, sink: Callable[[Partition, bytes], None], skip: Iterable[str] = (),
                 on_chunk: Optional[ChunkCallback] = None):
        return self._run("read_all", self.engine.read_all, sink, skip, on_chunk)

    def write_partition(self, name: str, data: bytes, on_chunk: Optional[ChunkCallback] = None,
                        on_progress: Optional[ProgressCallback] = None):
        return self._run("write_partition", self.engine.write_partition, name, data, on_chunk, on_progress)

    def write_flash(self, address: int, data: bytes, section: Section = Section.USER,
                    on_chunk: Optional[ChunkCallback] = None, on_progress: Optional[ProgressCallback] = None):
        return self._run("write_flash", self.engine.write_flash, address, data, section, on_chunk, on_progress)

    def erase_flash(self, address: int, length: int, section: Section = Section.USER,
                    on_progress: Optional[ProgressCallback] = None):
        return self._run("erase_flash", self.engine.erase_flash, address, length, section, on_progress)

    def format_partition(self, name: str, on_progress: Optional[ProgressCallback] = None):
        return self._run("format_partition", self.engine.format_partition, name, on_progress)

    def shutdown(self):
        self._run("shutdown", self.engine.shutdown)
        self.close()

    def reboot(self, mode: RebootMode = RebootMode.NORMAL):
        self._run("reboot", self.engine.reboot, mode)
        self.close()

    def peek(self, address: int, length: int) -> bytes:
        return self._run("peek", self.engine.peek, address, length)

    def set_seccfg(self, lock_state: LockState, payload: bytes, on_chunk: Optional[ChunkCallback] = None):
        return self._run("set_seccfg", self.engine.set_seccfg, LockState(lock_state), payload, on_chunk)
