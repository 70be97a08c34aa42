from mtkda.config import SessionConfig
from mtkda.engine import LockState, RebootMode
from mtkda.errors import (DAError, DeviceError, FramingError, ProtocolError, SessionBusyError, SessionClosedError,
                          TransferError, TransportError, UnsupportedCommand)
from mtkda.partition import Partition, Section, Storage, StorageInfo
from mtkda.session import Session, detect_protocol
from mtkda.transport import SerialTransport, Transport
from mtkda.xmlda import HostRequest, HostRequestHandler

__version__ = "0.1.0"
