"""
XML (V6) command engine.

Lifecycle of one command:

  host  <da>..<command>CMD:X</command>..</da>
  dev   OK                       (or ERR!UNSUPPORTED, CMD:END, CMD:START)
  dev   CMD:UPLOAD-FILE / CMD:DOWNLOAD-FILE / CMD:PROGRESS-REPORT / ...
  host  OK                       (every device command is acked)
  ...                            (data, progress or a host request answer)
  dev   CMD:END <result/> <message/>
  host  OK
  dev   CMD:START
  host  OK
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from mtkda import packet
from mtkda.config import SessionConfig
from mtkda.engine import CommandEngine, LockState, ProgressCallback, RebootMode
from mtkda.errors import DeviceError, ProtocolError, TransferError, UnsupportedCommand
from mtkda.partition import Partition, Section, StorageInfo, parse_hw_info, parse_xml_table, xml_section
from mtkda.progress import ProgressReport, xml_events
from mtkda.status import TextDetail, decode_text
from mtkda.transfer import (ChunkCallback, Direction, Transfer, TransferSpec, xml_download, xml_upload,
                            xml_upload_size)
from mtkda.xmlmsg import Cmd, Token, XmlMessage, get_field, hexarg, is_xml, parse_hex, value_token

logger = logging.getLogger(__name__)

BOOT_MODES = {
    RebootMode.FASTBOOT: "FASTBOOT",
    RebootMode.META: "META",
    RebootMode.TEST: "ANDROID-TEST-MODE",
}


class State(Enum):
    WAIT_START = "wait-start"
    CMD_SENT = "cmd-sent"
    ACKED = "acked"
    EXECUTING = "executing"
    END = "end"
    FAILED = "failed"


@dataclass
class HostRequest:
    """A device command the engine does not consume itself."""
    command: str
    args: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.args.get("key", "")


class HostRequestHandler:
    """Answers device-initiated requests. None denies the request."""

    def handle(self, request: HostRequest) -> Optional[str]:
        raise NotImplementedError


class DenyAllHandler(HostRequestHandler):
    def handle(self, request: HostRequest) -> Optional[str]:
        logger.debug(f"Denying host request {request.command} {request.args}")
        return None


def mem_length(path: str) -> Optional[int]:
    """MEM://0x<addr>:0x<len> -> len"""
    if not path.startswith("MEM://"):
        return None
    try:
        return int(path.rsplit(":", 1)[1], 16)
    except (IndexError, ValueError):
        return None


class XmlEngine(CommandEngine):
    generation = "V6"
    IDLE = State.WAIT_START
    FAILED = State.FAILED

    def __init__(self, stream, config: Optional[SessionConfig] = None,
                 partitions: Optional[Iterable[Partition]] = None,
                 handler: Optional[HostRequestHandler] = None):
        super().__init__(stream, config, partitions)
        self.handler = handler or DenyAllHandler()
        self.state = State.WAIT_START

    # --- wire helpers ---

    def _recv_text(self, tag: str) -> str:
        return packet.payload_text(packet.decode(self.stream, tag))

    def _recv_message(self, tag: str) -> XmlMessage:
        text = self._recv_text(tag)
        if not is_xml(text):
            raise ProtocolError(f"[{tag}] expected XML command, got {text!r}")
        return XmlMessage.parse(text)

    def _ack(self, tag: str, token: str = Token.OK):
        packet.send_text(self.stream, token, tag)

    def _end(self, end: XmlMessage, tag: str):
        """Ack CMD:END, then the device's CMD:START."""
        self.state = State.END
        self._ack(tag)
        start = self._recv_message(tag)
        if start.command != Cmd.START:
            raise ProtocolError(f"[{tag}] expected {Cmd.START} after {Cmd.END}, got {start.command}")
        self._ack(tag)
        self.state = State.WAIT_START

    # --- command execution ---

    def _execute(self, message: XmlMessage, data: Optional[bytes] = None,
                 on_chunk: Optional[ChunkCallback] = None,
                 on_progress: Optional[ProgressCallback] = None) -> bytes:
        """Send one command and serve the device until it ends it. Returns uploaded bytes."""
        tag = message.command.split(":", 1)[-1]
        with self._operation(tag):
            self.state = State.CMD_SENT
            packet.send_text(self.stream, message.encode(), tag)
            reply = self._recv_text(tag)
            if reply == Token.UNSUPPORTED:
                end = self._recv_message(tag)
                if end.command != Cmd.END:
                    raise ProtocolError(f"[{tag}] expected {Cmd.END} after {reply}, got {end.command}")
                self._end(end, tag)
                raise UnsupportedCommand(decode_text(end.message or reply), message.command)
            if reply != Token.OK:
                raise ProtocolError(f"[{tag}] expected {Token.OK!r} or {Token.UNSUPPORTED!r}, got {reply!r}")
            self.state = State.ACKED
            uploaded: List[bytes] = []
            while True:
                msg = self._recv_message(tag)
                if msg.command == Cmd.END:
                    break
                self.state = State.EXECUTING
                self._ack(tag)
                self._dispatch(msg, tag, data, uploaded, on_chunk, on_progress)
            self._end(msg, tag)
            if msg.result != Token.OK:
                detail = decode_text(msg.message or msg.result or "no result")
                raise DeviceError(detail, message.command)
            return b"".join(uploaded)

    def _dispatch(self, msg: XmlMessage, tag: str, data: Optional[bytes], uploaded: List[bytes],
                  on_chunk: Optional[ChunkCallback], on_progress: Optional[ProgressCallback]):
        if msg.command == Cmd.UPLOAD_FILE:
            chunk_size = parse_hex(msg.args.get("packet_length") or "0", "packet_length")
            size = xml_upload_size(self.stream, tag)
            self.transfer = Transfer(TransferSpec(Direction.DEVICE_TO_HOST, size, chunk_size), tag, on_chunk)
            uploaded.append(xml_upload(self.stream, self.transfer))
        elif msg.command == Cmd.DOWNLOAD_FILE:
            if data is None:
                raise ProtocolError(f"[{tag}] device requested a download but the command carries no data")
            announced = mem_length(msg.args.get("source_file", ""))
            if announced is not None and announced != len(data):
                raise TransferError(f"[{tag}] device expects {announced} bytes, have {len(data)}",
                                    0, len(data))
            chunk_size = parse_hex(msg.args.get("packet_length") or "0", "packet_length")
            self.transfer = Transfer(TransferSpec(Direction.HOST_TO_DEVICE, len(data), chunk_size), tag, on_chunk)
            xml_download(self.stream, self.transfer, data)
        elif msg.command == Cmd.PROGRESS_REPORT:
            ProgressReport(xml_events(self.stream, tag), self._progress_sink(on_progress)).drain()
        elif msg.command == Cmd.FILE_SYS_OPERATION and msg.args.get("key") == "FILE-SIZE" and data is not None:
            self._ack(tag, value_token(len(data)))
        else:
            answer = self.handler.handle(HostRequest(msg.command, dict(msg.args)))
            self._ack(tag, Token.ERR if answer is None else answer)

    def command(self, command: str, **args) -> bytes:
        """Run an arbitrary CMD:* with no host data."""
        return self._execute(XmlMessage(command, {k: str(v) for k, v in args.items()}))

    # --- storage and partitions ---

    def _detect_storage(self) -> Optional[StorageInfo]:
        try:
            data = self._execute(XmlMessage(Cmd.GET_HW_INFO))
        except DeviceError as e:
            logger.warning(f"GET-HW-INFO failed: {e}")
            return None
        with self._operation("GET-HW-INFO"):
            return parse_hw_info(data)

    def _device_partition_table(self) -> Optional[List[Partition]]:
        try:
            data = self._execute(XmlMessage(Cmd.READ_PARTITION_TABLE))
        except DeviceError as e:
            logger.warning(f"READ-PARTITION-TABLE failed ({e}), reading the GPT instead")
            return None
        with self._operation("READ-PARTITION-TABLE"):
            return parse_xml_table(data.decode("utf-8", errors="replace"))

    def read_partition(self, name: str, on_chunk: Optional[ChunkCallback] = None) -> bytes:
        msg = XmlMessage(Cmd.READ_PARTITION, {"partition": name, "target_file": name})
        return self._execute(msg, on_chunk=on_chunk)

    def write_partition(self, name: str, data: bytes, on_chunk: Optional[ChunkCallback] = None,
                        on_progress: Optional[ProgressCallback] = None):
        msg = XmlMessage(Cmd.WRITE_PARTITION, {"partition": name, "source_file": name})
        self._execute(msg, data, on_chunk, on_progress)
        logger.info(f"Wrote 0x{len(data):X} bytes to {name}")

    def format_partition(self, name: str, on_progress: Optional[ProgressCallback] = None):
        self._execute(XmlMessage(Cmd.ERASE_PARTITION, {"partition": name}), on_progress=on_progress)
        logger.info(f"Erased {name}")

    # --- flash access ---

    def _section(self, section: Section) -> str:
        return xml_section(self.storage, section)

    def read_flash(self, address: int, length: int, section: Section = Section.USER,
                   on_chunk: Optional[ChunkCallback] = None) -> bytes:
        part = self._section(section)
        msg = XmlMessage(Cmd.READ_FLASH, {
            "partition": part,
            "target_file": part,
            "length": hexarg(length),
            "offset": hexarg(address),
        })
        return self._execute(msg, on_chunk=on_chunk)

    def write_flash(self, address: int, data: bytes, section: Section = Section.USER,
                    on_chunk: Optional[ChunkCallback] = None, on_progress: Optional[ProgressCallback] = None):
        msg = XmlMessage(Cmd.WRITE_FLASH, {
            "partition": self._section(section),
            "length": hexarg(len(data)),
            "offset": hexarg(address),
        })
        self._execute(msg, data, on_chunk, on_progress)
        logger.info(f"Wrote 0x{len(data):X} bytes at 0x{address:X} ({section.value})")

    def erase_flash(self, address: int, length: int, section: Section = Section.USER,
                    on_progress: Optional[ProgressCallback] = None):
        msg = XmlMessage(Cmd.ERASE_FLASH, {
            "partition": self._section(section),
            "offset": hexarg(address),
            "length": hexarg(length),
        })
        self._execute(msg, on_progress=on_progress)
        logger.info(f"Erased 0x{length:X} bytes at 0x{address:X} ({section.value})")

    # --- power ---

    def shutdown(self):
        self._execute(XmlMessage(Cmd.REBOOT, {"action": "IMMEDIATE"}))

    def reboot(self, mode: RebootMode = RebootMode.NORMAL):
        mode = RebootMode(mode)
        logger.info(f"Rebooting to {mode.name.lower()}")
        if mode in BOOT_MODES:
            self._execute(XmlMessage(Cmd.SET_BOOT_MODE, {
                "mode": BOOT_MODES[mode],
                "connect_type": "USB",
                "mobile_log": "ON",
                "adb": "ON",
            }))
        self.shutdown()

    # --- extensions ---

    def probe_extensions(self):
        """Raise UnsupportedCommand unless DA extensions answer EXT-ACK."""
        resp = self._execute(XmlMessage(Cmd.EXT_ACK))
        ack = get_field(resp, "status")
        if ack != Token.OK:
            raise UnsupportedCommand(TextDetail(f"DA extensions failed to start: {ack or resp[:32]!r}"),
                                     Cmd.EXT_ACK)
        logger.info("DA extensions ack: OK")

    def peek(self, address: int, length: int) -> bytes:
        data = self._execute(XmlMessage(Cmd.EXT_READ_MEM, {"address": hexarg(address), "length": hexarg(length)}))
        if len(data) != length:
            raise TransferError(f"[EXT-READ-MEM] read {len(data)} of {length} bytes at 0x{address:X}",
                                len(data), length, clean=True)
        return data

    def set_seccfg(self, lock_state: LockState, payload: bytes, on_chunk: Optional[ChunkCallback] = None):
        self.probe_extensions()
        logger.info(f"Writing seccfg ({lock_state.value}, {len(payload)} bytes)")
        self.write_partition("seccfg", payload, on_chunk=on_chunk)
