"""XML command messages and ASCII tokens of the V6 DA protocol."""
from dataclasses import dataclass, field
from typing import Dict, Optional
from xml.etree import ElementTree

from mtkda.errors import ProtocolError

XML_DECL = '<?xml version="1.0" encoding="utf-8"?>'


class Token:
    """Exact token texts (NUL terminator stripped) seen on the wire."""
    OK = "OK"
    ERR = "ERR"
    VALUE = "OK@"
    PROGRESS = "OK!PROGRESS@"
    EOT = "OK!EOT"
    UNSUPPORTED = "ERR!UNSUPPORTED"


class Cmd:
    START = "CMD:START"
    END = "CMD:END"
    UPLOAD_FILE = "CMD:UPLOAD-FILE"
    DOWNLOAD_FILE = "CMD:DOWNLOAD-FILE"
    PROGRESS_REPORT = "CMD:PROGRESS-REPORT"
    FILE_SYS_OPERATION = "CMD:FILE-SYS-OPERATION"
    READ_PARTITION = "CMD:READ-PARTITION"
    WRITE_PARTITION = "CMD:WRITE-PARTITION"
    READ_FLASH = "CMD:READ-FLASH"
    WRITE_FLASH = "CMD:WRITE-FLASH"
    ERASE_FLASH = "CMD:ERASE-FLASH"
    ERASE_PARTITION = "CMD:ERASE-PARTITION"
    READ_PARTITION_TABLE = "CMD:READ-PARTITION-TABLE"
    REBOOT = "CMD:REBOOT"
    SET_BOOT_MODE = "CMD:SET-BOOT-MODE"
    EXT_ACK = "CMD:EXT-ACK"
    EXT_READ_MEM = "CMD:EXT-READ-MEM"
    GET_HW_INFO = "CMD:GET-HW-INFO"


def hexarg(value: int) -> str:
    return f"0x{value:X}"


def parse_hex(text: str, what: str = "value") -> int:
    """Hex field sent by the device; garbage here means the stream is not what we think it is."""
    try:
        return int(text.strip(), 16)
    except (AttributeError, ValueError):
        raise ProtocolError(f"Malformed {what}: {text!r}")


def value_token(value: int) -> str:
    return f"{Token.VALUE}{hex(value)}"


def parse_value_token(text: str) -> int:
    """OK@0x1234 -> 0x1234"""
    if not text.startswith(Token.VALUE):
        raise ProtocolError(f"Expected {Token.VALUE}<hex>, got {text!r}")
    try:
        return int(text[len(Token.VALUE):], 16)
    except ValueError:
        raise ProtocolError(f"Malformed value token: {text!r}")


@dataclass
class XmlMessage:
    command: str
    args: Dict[str, str] = field(default_factory=dict)
    version: str = "1.0"
    root: str = "da"

    @property
    def result(self) -> Optional[str]:
        return self.args.get("result")

    @property
    def message(self) -> Optional[str]:
        return self.args.get("message")

    def encode(self) -> str:
        top = ElementTree.Element(self.root)
        ElementTree.SubElement(top, "version").text = self.version
        ElementTree.SubElement(top, "command").text = self.command
        if self.args:
            arg = ElementTree.SubElement(top, "arg")
            for key, value in self.args.items():
                ElementTree.SubElement(arg, key).text = str(value)
        return XML_DECL + ElementTree.tostring(top, encoding="unicode")

    @classmethod
    def parse(cls, text: str) -> "XmlMessage":
        try:
            top = ElementTree.fromstring(text.rstrip("\x00").encode("utf-8"))
        except ElementTree.ParseError as e:
            raise ProtocolError(f"Malformed XML message: {e}: {text[:64]!r}")
        command = (top.findtext("command") or "").strip()
        if not command:
            raise ProtocolError(f"XML message without command: {text[:64]!r}")
        args = {}
        arg = top.find("arg")
        if arg is not None:
            for child in arg:
                args[child.tag] = (child.text or "").strip()
        # Some DA builds place result/message next to arg
        for key in ("result", "message"):
            if key not in args and top.find(key) is not None:
                args[key] = (top.findtext(key) or "").strip()
        version = (top.findtext("version") or "1.0").strip()
        return cls(command, args, version, top.tag)


def is_xml(text: str) -> bool:
    return text.lstrip().startswith("<")


def get_field(data, fieldname: str) -> str:
    """Text of the first <fieldname> element in a loose XML fragment, or ''."""
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).rstrip(b"\x00").decode("utf-8", errors="replace")
    start = data.find(f"<{fieldname}>")
    if start == -1:
        return ""
    start += len(fieldname) + 2
    end = data.find(f"</{fieldname}>", start)
    if end == -1:
        return ""
    return data[start:end].strip()
