from typing import Optional

from mtkda.status import ErrorDetail, Status, TextDetail


class DAError(Exception):
    """Base exception for Download Agent protocol errors"""
    fatal = True


class TransportError(DAError):
    """Underlying byte stream failed (port gone, write error)"""
    pass


class FramingError(DAError):
    """Bad magic or truncated header/payload"""
    pass


class ProtocolError(DAError):
    """Response does not fit the current protocol state"""
    pass


class DeviceError(DAError):
    """Device reported a non-success status or an XML error message"""
    fatal = False

    def __init__(self, detail: ErrorDetail, context: str = ""):
        self.detail = detail
        self.context = context
        msg = f"{context}: {detail}" if context else str(detail)
        super().__init__(msg)

    @property
    def status(self) -> Optional[Status]:
        return self.detail if isinstance(self.detail, Status) else None

    @property
    def message(self) -> Optional[str]:
        return self.detail.message if isinstance(self.detail, TextDetail) else None


class UnsupportedCommand(DeviceError):
    """Command needs DA extensions that are not loaded"""
    pass


class TransferError(DAError):
    """Chunk acknowledgement or byte count mismatch during a data transfer"""

    def __init__(self, msg: str, moved: int = 0, expected: int = 0, clean: bool = False):
        super().__init__(msg)
        self.moved = moved
        self.expected = expected
        # Both sides reached a termination point, the link is still in sync
        self.clean = clean

    @property
    def fatal(self):
        return not self.clean


class SessionBusyError(RuntimeError):
    """A second operation was started while one is in flight"""
    pass


class SessionClosedError(RuntimeError):
    """Operation attempted on a closed session"""
    pass
