from dataclasses import dataclass
from typing import Optional

from mtkda.partition import Storage


@dataclass
class SessionConfig:
    """Host side knobs for one DA session."""
    # Read timeout applied by the transport, seconds
    timeout: float = 2.0
    # Stream packet size overrides; None asks the DA
    write_len: Optional[int] = None
    read_len: Optional[int] = None
    # None asks the DA which flash is attached
    storage: Optional[Storage] = None
    debug: bool = False

    def __post_init__(self):
        if isinstance(self.storage, str):
            self.storage = Storage(self.storage.lower())
        for name in ("write_len", "read_len"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
