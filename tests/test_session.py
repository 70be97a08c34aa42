"""Tests for protocol detection and the session guards."""

import struct

import pytest

from mtkda import Session, SessionConfig, detect_protocol
from mtkda.errors import FramingError, SessionBusyError, SessionClosedError
from mtkda.partition import Partition
from mtkda.xflash import Cmd, DevCtrl, XFlashEngine
from mtkda.xmlda import XmlEngine

from fakes import FakeDevice, data, status, text

BOOT_A = Partition("boot_a", 0x1000, 8)
BAD_MAGIC = struct.pack("<III", 0xDEADBEEF, 1, 4) + bytes(4)


def open_v5(dev: FakeDevice) -> Session:
    config = SessionConfig(write_len=4, read_len=4, storage="emmc")
    return Session.open(dev, "xflash", config=config, partitions=[BOOT_A])


def test_detect_xflash() -> None:
    """A u32 status to DEVICE_CTRL means XFlash; the DA version is read along the way."""
    dev = FakeDevice(status(0), status(0), data(b"1.0\x00"), status(0))
    assert detect_protocol(dev) == "xflash"
    assert dev.sent == [struct.pack("<I", Cmd.DEVICE_CTRL), struct.pack("<I", DevCtrl.GET_DA_VERSION)]
    assert dev.exhausted


def test_detect_xml() -> None:
    """Text in reply to the probe means an XML DA."""
    dev = FakeDevice(text("ERR!UNSUPPORTED"))
    session = Session.open(dev)
    assert session.generation == "V6"
    assert isinstance(session.engine, XmlEngine)


def test_open_xflash_auto() -> None:
    dev = FakeDevice(status(0), status(0), data(b"1.0\x00"), status(0))
    session = Session.open(dev, "auto")
    assert isinstance(session.engine, XFlashEngine)
    assert session.generation == "V5"


def test_detect_bad_magic_closes_transport() -> None:
    """Framing errors during detection close the transport."""
    dev = FakeDevice(BAD_MAGIC)
    with pytest.raises(FramingError):
        Session.open(dev)
    assert dev.closed


def test_unknown_protocol() -> None:
    with pytest.raises(ValueError):
        Session.open(FakeDevice(), "v7")


def test_bad_magic_closes_session() -> None:
    """A fatal error mid-operation tears down the session and the transport."""
    dev = FakeDevice(BAD_MAGIC)
    session = open_v5(dev)
    with pytest.raises(FramingError):
        session.read_flash(0, 4)
    assert session.closed
    assert dev.closed
    with pytest.raises(SessionClosedError):
        session.read_partition("boot_a")


def test_busy_guard() -> None:
    """Starting an operation from inside a chunk callback is refused."""
    dev = FakeDevice(status(0), status(0), data(b"ABCD"), data(b"EFGH"), status(0))
    session = open_v5(dev)
    seen = []

    def on_chunk(moved, total):
        assert session.busy
        assert session.transfer_state.moved == moved
        with pytest.raises(SessionBusyError):
            session.peek(0, 4)
        seen.append((moved, total))

    assert session.read_partition("boot_a", on_chunk=on_chunk) == b"ABCDEFGH"
    assert seen == [(4, 8), (8, 8)]
    assert not session.busy
    assert session.transfer_state is None


def test_context_manager_closes() -> None:
    dev = FakeDevice()
    with open_v5(dev) as session:
        assert not session.closed
    assert session.closed
    assert dev.closed
    with pytest.raises(SessionClosedError):
        session.list_partitions()


def test_close_is_idempotent() -> None:
    dev = FakeDevice()
    session = open_v5(dev)
    session.close()
    session.close()
    assert dev.closed


def test_read_all_v5() -> None:
    """Every partition not in skip goes to the sink in table order."""
    dev = FakeDevice(status(0), status(0), data(b"ABCD"), data(b"EFGH"), status(0))
    session = Session.open(dev, "xflash", config=SessionConfig(write_len=4, read_len=4, storage="emmc"),
                           partitions=[BOOT_A, Partition("userdata", 0x10000, 0x1000)])
    got = []
    session.read_all(lambda part, blob: got.append((part.name, blob)), skip=["userdata"])
    assert got == [("boot_a", b"ABCDEFGH")]


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        SessionConfig(write_len=0)
    assert SessionConfig(storage="ufs").storage.value == "ufs"


def test_detect_xml_plain_err() -> None:
    """A bare ERR token is four bytes long but still text from an XML DA."""
    dev = FakeDevice(text("ERR"))
    assert detect_protocol(dev) == "xml"


def test_detect_xml_ok() -> None:
    dev = FakeDevice(text("OK"))
    session = Session.open(dev)
    assert session.generation == "V6"
