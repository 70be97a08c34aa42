"""End-to-end tests for XML (V6) sessions against a scripted device."""

import pytest

from mtkda import HostRequest, HostRequestHandler, LockState, RebootMode, Session, SessionConfig
from mtkda.errors import DeviceError, ProtocolError, TransferError, UnsupportedCommand
from mtkda.partition import PGPT_SIZE, Partition, Section
from mtkda.progress import Done, Percent
from mtkda.xmlda import State
from mtkda.xmlmsg import Cmd, XmlMessage

from fakes import FakeDevice, data, hw_info, make_gpt, text, xml

STATUS_OK = b"<status>OK</status>"


def end(result: str = "OK", message: str = None) -> bytes:
    """CMD:END followed by the CMD:START that re-arms the device."""
    args = {"result": result}
    if message is not None:
        args["message"] = message
    return xml(Cmd.END, **args) + xml(Cmd.START)


def upload(payload: bytes, packet_length: int = 0x1000) -> bytes:
    """Device side of CMD:UPLOAD-FILE sending payload in packet_length chunks."""
    out = [xml(Cmd.UPLOAD_FILE, checksum="CHK_NO", info="", target_file="MEM",
               packet_length=hex(packet_length)), text(f"OK@{hex(len(payload))}")]
    for pos in range(0, len(payload), packet_length):
        out.append(text("OK"))
        out.append(data(payload[pos:pos + packet_length]))
    return b"".join(out)


def sent_command(dev: FakeDevice, index: int = 0) -> XmlMessage:
    return XmlMessage.parse(dev.sent_text[index])


def last_command(dev: FakeDevice) -> XmlMessage:
    return [XmlMessage.parse(t) for t in dev.sent_text if t.startswith("<")][-1]


def open_v6(dev: FakeDevice, handler=None, partitions=None, storage="emmc") -> Session:
    return Session.open(dev, "xml", handler=handler, config=SessionConfig(storage=storage), partitions=partitions)


def test_read_partition_seccfg() -> None:
    """Scenario: READ-PARTITION, device uploads 8 bytes in two chunks, CMD:END without message."""
    dev = FakeDevice(text("OK"), upload(b"SCFG\x00\x00\x00\x01", packet_length=4), end())
    session = open_v6(dev)
    assert session.read_partition("seccfg") == b"SCFG\x00\x00\x00\x01"

    cmd = sent_command(dev)
    assert cmd.command == Cmd.READ_PARTITION
    assert cmd.args == {"partition": "seccfg", "target_file": "seccfg"}
    assert dev.sent_text[1:] == ["OK"] * 8
    assert session.engine.state is State.WAIT_START
    assert dev.exhausted


def test_write_partition_answers_file_size() -> None:
    """FILE-SIZE for the in-flight download is answered by the engine before DOWNLOAD-FILE."""
    dev = FakeDevice(
        text("OK"),
        xml(Cmd.FILE_SYS_OPERATION, key="FILE-SIZE", file_path="boot_a"),
        xml(Cmd.DOWNLOAD_FILE, checksum="CHK_NO", info="boot_a", source_file="MEM://0x0:0x6", packet_length="0x4"),
        *[text("OK")] * 5,
        end(),
    )
    chunks = []
    session = open_v6(dev)
    session.write_partition("boot_a", b"abcdef", on_chunk=lambda moved, total: chunks.append(moved))
    assert dev.sent_text[1:] == [
        "OK", "OK@0x6",
        "OK", "OK@0x6", "OK@0x0", "abcd", "OK@0x4", "ef",
        "OK", "OK",
    ]
    assert chunks == [4, 6]
    assert sent_command(dev).args == {"partition": "boot_a", "source_file": "boot_a"}


def test_download_size_mismatch() -> None:
    """The device asking for a different size than the host holds is a transfer error."""
    dev = FakeDevice(
        text("OK"),
        xml(Cmd.DOWNLOAD_FILE, source_file="MEM://0x0:0x10", packet_length="0x4"),
    )
    session = open_v6(dev)
    with pytest.raises(TransferError):
        session.write_flash(0, b"abcd")
    assert session.closed


def test_download_without_data() -> None:
    """DOWNLOAD-FILE during a read command is out of place."""
    dev = FakeDevice(text("OK"), xml(Cmd.DOWNLOAD_FILE, source_file="MEM://0x0:0x4", packet_length="0x4"))
    session = open_v6(dev)
    with pytest.raises(ProtocolError):
        session.read_flash(0, 4)
    assert session.engine.failed


def test_read_flash_args() -> None:
    """Flash access names the section and passes offset/length in hex."""
    dev = FakeDevice(text("OK"), upload(b"\xaa" * 0x10), end())
    session = open_v6(dev)
    assert session.read_flash(0x200, 0x10, Section.BOOT1) == b"\xaa" * 0x10
    assert sent_command(dev).args == {
        "partition": "EMMC-BOOT1",
        "target_file": "EMMC-BOOT1",
        "length": "0x10",
        "offset": "0x200",
    }


def test_unsupported_command_keeps_session() -> None:
    """ERR!UNSUPPORTED: host acks CMD:END and CMD:START, then the next command works."""
    dev = FakeDevice(text("ERR!UNSUPPORTED"), end("ERR", "Unsupported command"))
    session = open_v6(dev)
    with pytest.raises(UnsupportedCommand) as ei:
        session.set_seccfg(LockState.UNLOCK, bytes(0x200))
    assert ei.value.message == "Unsupported command"
    assert sent_command(dev).command == Cmd.EXT_ACK
    assert dev.sent_text[1:] == ["OK", "OK"]
    assert session.engine.state is State.WAIT_START
    assert not session.closed

    dev.feed(
        text("OK"),
        xml(Cmd.PROGRESS_REPORT, message="erase"),
        text("OK!PROGRESS@10"), text("OK!PROGRESS@45"), text("OK!PROGRESS@90"), text("OK!EOT"),
        end(),
    )
    events = []
    session.format_partition("userdata", on_progress=events.append)
    assert events == [Percent(10), Percent(45), Percent(90), Done()]
    assert sent_command(dev, 3).command == Cmd.ERASE_PARTITION


def test_seccfg_with_extensions() -> None:
    """EXT-ACK uploads <status>OK</status>; the payload then goes to the seccfg partition."""
    dev = FakeDevice(
        text("OK"), upload(STATUS_OK), end(),
        text("OK"),
        xml(Cmd.FILE_SYS_OPERATION, key="FILE-SIZE", file_path="seccfg"),
        xml(Cmd.DOWNLOAD_FILE, source_file="MEM://0x0:0x4", packet_length="0x1000"),
        text("OK"), text("OK"), text("OK"),
        end(),
    )
    session = open_v6(dev)
    session.set_seccfg("unlock", b"SCFG")
    commands = [XmlMessage.parse(t).command for t in dev.sent_text if t.startswith("<")]
    assert commands == [Cmd.EXT_ACK, Cmd.WRITE_PARTITION]
    assert dev.exhausted


def test_extension_ack_not_ok() -> None:
    """An extension reply other than OK counts as unsupported."""
    dev = FakeDevice(text("OK"), upload(b"<status>ERR</status>"), end())
    session = open_v6(dev)
    with pytest.raises(UnsupportedCommand, match="ERR"):
        session.set_seccfg(LockState.LOCK, b"SCFG")
    assert not session.closed


def test_end_with_error_message() -> None:
    """A non-OK result raises DeviceError with the message text."""
    dev = FakeDevice(text("OK"), end("ERROR", "partition not found"))
    session = open_v6(dev)
    with pytest.raises(DeviceError) as ei:
        session.read_partition("nope")
    assert ei.value.message == "partition not found"
    assert not session.closed
    assert dev.sent_text[1:] == ["OK", "OK"]


def test_end_with_error_without_message() -> None:
    """Without a message the result text is reported."""
    dev = FakeDevice(text("OK"), end("ERR!CANCEL"))
    with pytest.raises(DeviceError, match="ERR!CANCEL"):
        open_v6(dev).erase_flash(0, 0x1000)


def test_host_request_denied_by_default() -> None:
    """Requests the engine cannot serve are acked, then answered ERR."""
    dev = FakeDevice(text("OK"), xml(Cmd.FILE_SYS_OPERATION, key="EXISTS", file_path="/sdcard/x"), end())
    session = open_v6(dev)
    session.erase_flash(0, 0x1000)
    assert dev.sent_text[1:] == ["OK", "ERR", "OK", "OK"]


def test_host_request_handler() -> None:
    """A handler answer is sent verbatim after the ack."""

    class Sizes(HostRequestHandler):
        def __init__(self):
            self.seen = []

        def handle(self, request: HostRequest):
            self.seen.append(request)
            if request.key == "FILE-SIZE":
                return "OK@0x200"
            return None

    handler = Sizes()
    dev = FakeDevice(text("OK"), xml(Cmd.FILE_SYS_OPERATION, key="FILE-SIZE", file_path="/sdcard/x"), end())
    session = open_v6(dev, handler=handler)
    session.erase_flash(0, 0x1000)
    assert dev.sent_text[1:] == ["OK", "OK@0x200", "OK", "OK"]
    assert handler.seen[0].args["file_path"] == "/sdcard/x"


def test_unexpected_command_reply_closes_session() -> None:
    """Anything but OK or ERR!UNSUPPORTED after a command is a protocol error."""
    dev = FakeDevice(text("ERR!CANCEL"))
    session = open_v6(dev)
    with pytest.raises(ProtocolError):
        session.erase_flash(0, 0x1000)
    assert session.closed


def test_reboot_fastboot() -> None:
    """Fastboot is a SET-BOOT-MODE followed by REBOOT."""
    dev = FakeDevice(text("OK"), end(), text("OK"), end())
    session = open_v6(dev)
    session.reboot(RebootMode.FASTBOOT)
    commands = [XmlMessage.parse(t) for t in dev.sent_text if t.startswith("<")]
    assert [c.command for c in commands] == [Cmd.SET_BOOT_MODE, Cmd.REBOOT]
    assert commands[0].args == {"mode": "FASTBOOT", "connect_type": "USB", "mobile_log": "ON", "adb": "ON"}
    assert commands[1].args == {"action": "IMMEDIATE"}
    assert session.closed


def test_reboot_test_mode_name() -> None:
    """The test boot mode has its own XML name."""
    dev = FakeDevice(text("OK"), end(), text("OK"), end())
    open_v6(dev).reboot(RebootMode.TEST)
    assert sent_command(dev).args["mode"] == "ANDROID-TEST-MODE"


def test_reboot_normal_is_plain_reboot() -> None:
    """Normal and home-screen only send REBOOT."""
    dev = FakeDevice(text("OK"), end())
    open_v6(dev).reboot(RebootMode.HOME_SCREEN)
    assert sent_command(dev).command == Cmd.REBOOT


def test_peek() -> None:
    """EXT-READ-MEM uploads the requested bytes."""
    dev = FakeDevice(text("OK"), upload(b"\x11\x22\x33\x44"), end())
    session = open_v6(dev)
    assert session.peek(0x10200000, 4) == b"\x11\x22\x33\x44"
    assert sent_command(dev).args == {"address": "0x10200000", "length": "0x4"}


def test_list_partitions_and_read_all() -> None:
    """HW info, then READ-PARTITION-TABLE; boot entries and SGPT frame the table; read_all honours skip."""
    table = (
        b"<pt><name>boot_a</name><start>0x8000</start><size>0x4</size></pt>"
        b"<pt><name>userdata</name><start>0x10000</start><size>0x100000</size></pt>"
    )
    dev = FakeDevice(
        text("OK"), upload(hw_info(user=0x200000)), end(),
        text("OK"), upload(table), end(),
        text("OK"), upload(b"BOOT"), end(),
    )
    session = open_v6(dev)
    assert session.list_partitions() == [
        Partition("preloader", 0, 0x400000, Section.BOOT1),
        Partition("preloader_backup", 0, 0x400000, Section.BOOT2),
        Partition("PGPT", 0, PGPT_SIZE),
        Partition("boot_a", 0x8000, 4),
        Partition("userdata", 0x10000, 0x100000),
        Partition("SGPT", 0x200000 - PGPT_SIZE, PGPT_SIZE),
    ]
    assert sent_command(dev).command == Cmd.GET_HW_INFO
    dumped = {}
    skip = {"preloader", "preloader_backup", "PGPT", "userdata", "SGPT"}
    session.read_all(lambda part, blob: dumped.update({part.name: blob}), skip=skip)
    assert dumped == {"boot_a": b"BOOT"}
    assert dev.exhausted


def test_partition_table_falls_back_to_gpt() -> None:
    """A DA without READ-PARTITION-TABLE gets its GPT read through READ-FLASH."""
    gpt = make_gpt([("boot_a", 0x40, 0x47)])
    dev = FakeDevice(
        text("OK"), upload(hw_info()), end(),
        text("ERR!UNSUPPORTED"), end("ERR", "Unsupported command"),
        text("OK"), upload(gpt), end(),
    )
    session = open_v6(dev)
    names = [p.name for p in session.list_partitions()]
    assert names == ["preloader", "preloader_backup", "PGPT", "boot_a", "SGPT"]
    assert session.find_partition("boot_a") == Partition("boot_a", 0x8000, 0x1000)
    read = last_command(dev)
    assert read.command == Cmd.READ_FLASH
    assert read.args["partition"] == "EMMC-USER"
    assert read.args["length"] == "0x8000"
    assert not session.closed


def test_ufs_detected_from_hw_info() -> None:
    """Unconfigured storage is taken from GET-HW-INFO for flash section names."""
    dev = FakeDevice(text("OK"), upload(hw_info("UFS")), end(), text("OK"), upload(b"ABCD"), end())
    session = open_v6(dev, storage=None)
    assert session.read_flash(0, 4) == b"ABCD"
    assert last_command(dev).args["partition"] == "UFS-LUA2"
    assert session.storage_info().user_size == 0x100000


def test_hw_info_unsupported_defaults_to_emmc() -> None:
    dev = FakeDevice(
        text("ERR!UNSUPPORTED"), end("ERR", "Unsupported command"),
        text("OK"), upload(b"ABCD"), end(),
    )
    session = open_v6(dev, storage=None)
    assert session.read_flash(0, 4) == b"ABCD"
    assert last_command(dev).args["partition"] == "EMMC-USER"


def test_malformed_packet_length_closes_session() -> None:
    """A non-hex packet_length is a protocol error, not a bare ValueError."""
    dev = FakeDevice(
        text("OK"),
        xml(Cmd.UPLOAD_FILE, checksum="CHK_NO", info="", target_file="MEM", packet_length="zz"),
    )
    session = open_v6(dev)
    with pytest.raises(ProtocolError, match="packet_length"):
        session.read_flash(0, 4)
    assert session.engine.failed
    assert session.closed
