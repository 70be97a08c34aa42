"""
Progress reporting for long running DA operations (erase, pre-write erase).

Both protocol generations are exposed as a ProgressReport: a lazy, finite,
single-use iterator of Percent events terminated by one Done event.
"""
import logging
import struct
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

from mtkda import packet
from mtkda.errors import ProtocolError
from mtkda.status import STATUS_COMPLETE, STATUS_CONTINUE
from mtkda.xmlmsg import Token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Percent:
    value: int


@dataclass(frozen=True)
class Done:
    # Final V5 status word; V6 carries no status here
    status: Optional[int] = None


ProgressEvent = Union[Percent, Done]


class ProgressReport:
    """Validating single-pass view over a stream of progress events."""

    def __init__(self, source: Iterator[ProgressEvent], on_event: Optional[Callable[[ProgressEvent], None]] = None):
        self._source = iter(source)
        self._on_event = on_event
        self._last = 0
        self._done: Optional[Done] = None
        self._finished = False

    def __iter__(self):
        return self

    def __next__(self) -> ProgressEvent:
        if self._finished:
            raise StopIteration
        try:
            event = next(self._source)
        except StopIteration:
            self._finished = True
            if self._done is None:
                raise ProtocolError("Progress report ended without completion marker")
            raise
        if self._done is not None:
            self._finished = True
            raise ProtocolError(f"Progress event after completion: {event}")
        if isinstance(event, Percent):
            if not 0 <= event.value <= 100:
                self._finished = True
                raise ProtocolError(f"Progress out of range: {event.value}")
            if event.value < self._last:
                self._finished = True
                raise ProtocolError(f"Progress went backwards: {self._last} -> {event.value}")
            self._last = event.value
        elif isinstance(event, Done):
            self._done = event
        else:
            self._finished = True
            raise ProtocolError(f"Unknown progress event: {event!r}")
        if self._on_event:
            self._on_event(event)
        return event

    def drain(self) -> Done:
        """Consume the remaining events and return the completion marker."""
        for _ in self:
            pass
        return self._done


def xflash_events(stream, tag: str = "PROGRESS") -> Iterator[ProgressEvent]:
    """V5: (CONTINUE, pct)* then (COMPLETE, final status). Each percentage is acked."""
    while True:
        sentinel = packet.recv_u32(stream, tag)
        if sentinel == STATUS_CONTINUE:
            pct = packet.recv_u32(stream, tag)
            packet.send(stream, struct.pack("<I", 0), tag=tag)
            yield Percent(pct)
        elif sentinel == STATUS_COMPLETE:
            final = packet.recv_u32(stream, tag)
            if final in (STATUS_CONTINUE, STATUS_COMPLETE):
                raise ProtocolError(f"Progress event after completion: 0x{final:08X}")
            yield Done(final)
            return
        else:
            raise ProtocolError(f"Unexpected status 0x{sentinel:08X} in progress report")


def xml_events(stream, tag: str = "PROGRESS") -> Iterator[ProgressEvent]:
    """V6: OK!PROGRESS@<pct>* then OK!EOT, every token acked with OK."""
    while True:
        text = packet.payload_text(packet.decode(stream, tag))
        if text.startswith(Token.PROGRESS):
            raw = text[len(Token.PROGRESS):].rstrip("%")
            try:
                pct = int(raw)
            except ValueError:
                raise ProtocolError(f"Malformed progress token: {text!r}")
            packet.send_text(stream, Token.OK, tag)
            yield Percent(pct)
        elif text == Token.EOT:
            packet.send_text(stream, Token.OK, tag)
            yield Done()
            return
        else:
            raise ProtocolError(f"Unexpected token {text!r} in progress report")


def log_event(event: ProgressEvent):
    if isinstance(event, Percent):
        logger.debug(f"progress: {event.value}%")
    else:
        logger.debug("progress: done")
