"""SCP send: push one file to a remote ``scp -t``.

    local                         remote (scp -t)
    C0644 <size> <name>\\n  ->
                            <-    \\0
    <payload> \\0           ->
                            <-    \\0
    eof                     ->
                            <-    exit-status 0

Any other reply byte is a refusal followed by a diagnostic line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from loguru import logger

from librarian.events import Closed, Data, Eof, ExitStatus, ProviderError, StreamEvent, Timeout
from librarian.exceptions import ConfigurationError, ProtocolError, SCPError
from librarian.modules.base import Done, Emit, Failed, Step
from librarian.scp.header import OK, ControlLine
from librarian.scp.source import Payload

if TYPE_CHECKING:
    from librarian.channel import ChannelStream


class SendState(Enum):
    AWAIT_ACK0 = auto()
    SENDING_PAYLOAD = auto()
    AWAIT_ACK1 = auto()
    SEND_EOF = auto()
    DONE = auto()
    ERROR = auto()


@dataclass(slots=True)
class SendProgress:
    state: SendState = SendState.AWAIT_ACK0
    sent: int = 0
    reply: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    failure: SCPError | None = None


class ScpSend:
    """Protocol module for the sending half of an SCP copy."""

    __slots__ = ("header", "payload", "progress")

    def __init__(self, header: ControlLine, payload: Payload) -> None:
        if header.size != payload.size:
            raise ValueError(f"header announces {header.size} bytes, payload has {payload.size}")
        self.header = header
        self.payload = payload
        self.progress = SendProgress()

    @property
    def state(self) -> SendState:
        return self.progress.state

    @property
    def failure(self) -> SCPError | None:
        return self.progress.failure

    def initialize(self, stream: ChannelStream) -> None:
        logger.debug(f"ScpSend: announcing {self.header.encode()!r}")
        stream.write(self.header.encode())

    def on_event(self, event: StreamEvent, stream: ChannelStream) -> Step:
        match event:
            case Data(source="stderr", payload=payload):
                self.progress.stderr += payload
                return Emit()
            case Data(payload=payload):
                return self._on_reply(payload, stream)
            case Eof():
                return Emit()
            case ExitStatus(code=0):
                return Emit()
            case ExitStatus(code=code):
                if (refusal := self._unterminated_refusal()) is not None:
                    return self._fail(refusal, use_stderr=False)
                return self._fail(SCPError(f"scp exited with status {code}"))
            case Closed():
                if self.progress.state is SendState.SEND_EOF:
                    self.progress.state = SendState.DONE
                    logger.debug(f"ScpSend: sent {self.progress.sent} bytes as {self.header.name}")
                    return Done()
                if (refusal := self._unterminated_refusal()) is not None:
                    return self._fail(refusal, use_stderr=False)
                return self._fail(SCPError(f"channel closed while in {self.progress.state.name}"))
            case Timeout():
                return self._fail(SCPError(f"timed out in {self.progress.state.name}"))
            case ProviderError(reason=reason):
                return self._fail(SCPError(reason))

    def _on_reply(self, data: bytes, stream: ChannelStream) -> Step:
        reply = self.progress.reply
        reply += data
        while reply:
            if self.progress.state not in (SendState.AWAIT_ACK0, SendState.AWAIT_ACK1):
                return self._fail(ProtocolError(f"unexpected reply {bytes(reply)!r}"))
            if reply[0] != 0:
                newline = reply.find(b"\n")
                if newline < 0:
                    return Emit()  # diagnostic still arriving
                message = bytes(reply[1:newline]).decode(errors="replace")
                error = SCPError(message or f"remote refused with code {reply[0]}")
                return self._fail(error, use_stderr=False)
            del reply[0]
            if self.progress.state is SendState.AWAIT_ACK0:
                self._send_payload(stream)
                if self.progress.state is SendState.ERROR:
                    return Failed(str(self.progress.failure))
            else:
                self.progress.state = SendState.SEND_EOF
                stream.send_eof()
                logger.debug("ScpSend: final ack received, waiting for exit")
        return Emit()

    def _unterminated_refusal(self) -> SCPError | None:
        """A refusal whose diagnostic line was cut off by the remote going away."""
        reply = self.progress.reply
        if not reply or reply[0] == 0:
            return None
        message = bytes(reply[1:]).decode(errors="replace").strip()
        return SCPError(message or f"remote refused with code {reply[0]}")

    def _send_payload(self, stream: ChannelStream) -> None:
        self.progress.state = SendState.SENDING_PAYLOAD
        size = self.header.size
        try:
            for chunk in self.payload.chunks():
                if self.progress.sent + len(chunk) > size:
                    self._fail(ProtocolError(f"payload exceeds declared size of {size} bytes"))
                    return
                stream.write(chunk)
                self.progress.sent += len(chunk)
        except (OSError, ConfigurationError) as e:
            self._fail(SCPError(f"error reading payload: {e}"), use_stderr=False)
            return
        if self.progress.sent < size:
            self._fail(
                ProtocolError(f"payload short of declared size: sent {self.progress.sent} of {size} bytes")
            )
            return
        stream.write(OK)
        self.progress.state = SendState.AWAIT_ACK1

    def _fail(self, error: SCPError, *, use_stderr: bool = True) -> Failed:
        if use_stderr and self.progress.stderr and not isinstance(error, ProtocolError):
            error = type(error)(self.progress.stderr.decode(errors="replace"))
        self.progress.state = SendState.ERROR
        self.progress.failure = error
        return Failed(str(error))

    def on_done(self, stream: ChannelStream) -> None:
        if self.progress.failure is not None:
            raise self.progress.failure
        if self.progress.state is not SendState.DONE:
            raise SCPError(f"transfer incomplete in {self.progress.state.name}")
