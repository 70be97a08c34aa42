"""Operation contract shared by the XFlash (V5) and XML (V6) command engines."""
import logging
from contextlib import contextmanager
from enum import Enum, IntEnum
from typing import Callable, Iterable, List, Optional

from mtkda.config import SessionConfig
from mtkda.errors import DAError, ProtocolError
from mtkda.partition import (PGPT_SIZE, Partition, Section, Storage, StorageInfo, boot_partitions, parse_gpt,
                             sgpt_partition)
from mtkda.progress import ProgressEvent, log_event
from mtkda.transfer import ChunkCallback, Transfer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class RebootMode(IntEnum):
    NORMAL = 0
    HOME_SCREEN = 1
    FASTBOOT = 2
    TEST = 3
    META = 4


class LockState(Enum):
    LOCK = "lock"
    UNLOCK = "unlock"


class CommandEngine:
    """One protocol generation driving one byte stream."""
    generation = ""
    # Subclasses bind these to their own State members
    IDLE = None
    FAILED = None

    def __init__(self, stream, config: Optional[SessionConfig] = None,
                 partitions: Optional[Iterable[Partition]] = None):
        self.stream = stream
        self.config = config or SessionConfig()
        self._partitions: Optional[List[Partition]] = list(partitions) if partitions is not None else None
        self.state = None
        # Active data transfer, if any
        self.transfer: Optional[Transfer] = None
        self._storage_info: Optional[StorageInfo] = None
        self._storage_checked = False

    @property
    def failed(self) -> bool:
        return self.state is self.FAILED

    def _check_usable(self):
        if self.failed:
            raise ProtocolError(f"{self.generation} engine is in failed state; reset the connection")

    def _fail(self, exc: DAError):
        logger.error(f"[{self.generation}] {type(exc).__name__}: {exc}")
        self.state = self.FAILED
        self.transfer = None

    @contextmanager
    def _operation(self, name: str):
        """Run one command; fatal errors park the engine in FAILED, the rest return it to IDLE."""
        self._check_usable()
        logger.debug(f"[{self.generation}] {name}")
        try:
            yield
        except DAError as e:
            if e.fatal:
                if not self.failed:
                    self._fail(e)
            else:
                logger.warning(f"[{self.generation}] {name} failed: {e}")
                self.state = self.IDLE
            raise
        finally:
            self.transfer = None

    @staticmethod
    def _progress_sink(on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        return on_progress or log_event

    # --- storage ---

    def storage_info(self) -> Optional[StorageInfo]:
        """Flash geometry as reported by the DA, asked once per session."""
        if not self._storage_checked:
            self._storage_info = self._detect_storage()
            self._storage_checked = True
            info = self._storage_info
            if info is None:
                logger.warning(f"[{self.generation}] DA reported no eMMC/UFS storage")
            else:
                logger.info(f"Storage: {info.kind.name} block=0x{info.block_size:X} user=0x{info.user_size:X}")
        return self._storage_info

    @property
    def storage(self) -> Storage:
        """Configured storage, else the detected one, else eMMC."""
        if self.config.storage is not None:
            return self.config.storage
        info = self.storage_info()
        return info.kind if info else Storage.EMMC

    # --- partitions ---

    def list_partitions(self, refresh: bool = False) -> List[Partition]:
        if self._partitions is None or refresh:
            self._partitions = self._read_partition_table()
        return list(self._partitions)

    def _read_partition_table(self) -> List[Partition]:
        info = self.storage_info()
        table = self._device_partition_table()
        if table is None:
            table = self._read_gpt(info)
        names = {p.name for p in table}
        parts = [p for p in boot_partitions(info) if p.name not in names]
        parts.extend(table)
        sgpt = sgpt_partition(info)
        if sgpt is not None and sgpt.name not in names:
            parts.append(sgpt)
        logger.info(f"Partition table: {len(table)} partitions")
        return parts

    def _read_gpt(self, info: Optional[StorageInfo]) -> List[Partition]:
        """Primary GPT, then the backup at the end of the user section."""
        data = self.read_flash(0, PGPT_SIZE, Section.USER)
        try:
            return parse_gpt(data)
        except ProtocolError as e:
            logger.warning(f"Primary GPT unusable: {e}")
        sgpt = sgpt_partition(info)
        if sgpt is None:
            logger.error("Backup GPT location unknown without the user section size")
            return []
        data = self.read_flash(sgpt.start, sgpt.size, Section.USER)
        try:
            return parse_gpt(data, sgpt.start)
        except ProtocolError as e:
            logger.error(f"Backup GPT unusable: {e}")
            return []

    def find_partition(self, name: str) -> Partition:
        for part in self.list_partitions():
            if part.name == name:
                return part
        raise KeyError(f"Partition not found: {name}")

    def read_all(self, sink: Callable[[Partition, bytes], None], skip: Iterable[str] = (),
                 on_chunk: Optional[ChunkCallback] = None):
        skipped = set(skip)
        for part in self.list_partitions():
            if part.name in skipped:
                logger.info(f"Skipping {part.name}")
                continue
            logger.info(f"Reading {part.name} (0x{part.size:X} bytes)")
            sink(part, self.read_partition(part.name, on_chunk=on_chunk))

    # --- generation specific ---

    def _detect_storage(self) -> Optional[StorageInfo]:
        raise NotImplementedError

    def _device_partition_table(self) -> Optional[List[Partition]]:
        """Table as the DA reports it; None means read the GPT."""
        return None

    def read_partition(self, name: str, on_chunk: Optional[ChunkCallback] = None) -> bytes:
        raise NotImplementedError

    def read_flash(self, address: int, length: int, section: Section = Section.USER,
                   on_chunk: Optional[ChunkCallback] = None) -> bytes:
        raise NotImplementedError

    def write_partition(self, name: str, data: bytes, on_chunk: Optional[ChunkCallback] = None,
                        on_progress: Optional[ProgressCallback] = None):
        raise NotImplementedError

    def write_flash(self, address: int, data: bytes, section: Section = Section.USER,
                    on_chunk: Optional[ChunkCallback] = None, on_progress: Optional[ProgressCallback] = None):
        raise NotImplementedError

    def erase_flash(self, address: int, length: int, section: Section = Section.USER,
                    on_progress: Optional[ProgressCallback] = None):
        raise NotImplementedError

    def format_partition(self, name: str, on_progress: Optional[ProgressCallback] = None):
        raise NotImplementedError

    def shutdown(self):
        raise NotImplementedError

    def reboot(self, mode: RebootMode = RebootMode.NORMAL):
        raise NotImplementedError

    def peek(self, address: int, length: int) -> bytes:
        raise NotImplementedError

    def set_seccfg(self, lock_state: LockState, payload: bytes, on_chunk: Optional[ChunkCallback] = None):
        raise NotImplementedError
