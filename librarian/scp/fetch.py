"""SCP fetch: pull one file from a remote ``scp -f``.

    local                         remote (scp -f)
    \\0                     ->
                            <-    C0644 <size> <name>\\n
    \\0                     ->
                            <-    <payload> \\0
    \\0                     ->
                            <-    exit-status 0

The payload arrives in however many chunks the transport likes, possibly
glued to the header or to the terminator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import IO, TYPE_CHECKING

from loguru import logger

from librarian.events import Closed, Data, Eof, ExitStatus, ProviderError, StreamEvent, Timeout
from librarian.exceptions import ProtocolError, SCPError
from librarian.modules.base import Done, Emit, Failed, Step
from librarian.scp.header import FATAL, OK, WARNING, ControlLine, is_time_line

if TYPE_CHECKING:
    from librarian.channel import ChannelStream

# Longest control line we are willing to buffer.
MAX_LINE = 8192


class FetchState(Enum):
    INIT = auto()
    AWAIT_HEADER = auto()
    RECEIVING_PAYLOAD = auto()
    AWAIT_TERMINATOR = auto()
    AWAIT_REFUSAL = auto()
    AWAIT_EXIT = auto()
    DONE = auto()
    ERROR = auto()


@dataclass(slots=True)
class FetchProgress:
    state: FetchState = FetchState.INIT
    header: ControlLine | None = None
    received: int = 0
    line: bytearray = field(default_factory=bytearray)
    chunks: list[bytes] = field(default_factory=list)
    stderr: bytearray = field(default_factory=bytearray)
    failure: SCPError | None = None


class ScpFetch:
    """Protocol module for the receiving half of an SCP copy.

    The payload is collected in memory, or written to ``sink`` as it
    arrives when one is given.
    """

    __slots__ = ("sink", "progress")

    def __init__(self, sink: IO[bytes] | None = None) -> None:
        self.sink = sink
        self.progress = FetchProgress()

    @property
    def state(self) -> FetchState:
        return self.progress.state

    @property
    def header(self) -> ControlLine | None:
        return self.progress.header

    @property
    def failure(self) -> SCPError | None:
        return self.progress.failure

    def initialize(self, stream: ChannelStream) -> None:
        stream.write(OK)
        self.progress.state = FetchState.AWAIT_HEADER

    def on_event(self, event: StreamEvent, stream: ChannelStream) -> Step:
        match event:
            case Data(source="stderr", payload=payload):
                self.progress.stderr += payload
                return Emit()
            case Data(payload=payload):
                return self._consume(payload, stream)
            case Eof():
                return Emit()
            case ExitStatus(code=0):
                return Emit()
            case ExitStatus(code=code):
                return self._fail(SCPError(f"scp exited with status {code}"))
            case Closed():
                if self.progress.state is FetchState.AWAIT_EXIT:
                    self.progress.state = FetchState.DONE
                    logger.debug(f"ScpFetch: received {self.progress.received} bytes")
                    return Done()
                return self._fail(SCPError(f"channel closed while in {self.progress.state.name}"))
            case Timeout():
                return self._fail(SCPError(f"timed out in {self.progress.state.name}"))
            case ProviderError(reason=reason):
                return self._fail(SCPError(reason))

    def _take_line(self, data: bytes, pos: int) -> tuple[bytes | None, int]:
        line = self.progress.line
        newline = data.find(b"\n", pos)
        if newline < 0:
            line += data[pos:]
            if len(line) > MAX_LINE:
                raise ProtocolError(f"control line longer than {MAX_LINE} bytes")
            return None, len(data)
        line += data[pos : newline + 1]
        complete = bytes(line)
        line.clear()
        return complete, newline + 1

    def _consume(self, data: bytes, stream: ChannelStream) -> Step:
        pos = 0
        try:
            while pos < len(data):
                match self.progress.state:
                    case FetchState.AWAIT_HEADER:
                        line, pos = self._take_line(data, pos)
                        if line is not None:
                            self._on_line(line, stream)
                    case FetchState.RECEIVING_PAYLOAD:
                        pos = self._on_payload(data, pos)
                    case FetchState.AWAIT_TERMINATOR:
                        code = data[pos]
                        pos += 1
                        if code == 0:
                            stream.write(OK)
                            self.progress.state = FetchState.AWAIT_EXIT
                        else:
                            self.progress.line.append(code)
                            self.progress.state = FetchState.AWAIT_REFUSAL
                    case FetchState.AWAIT_REFUSAL:
                        line, pos = self._take_line(data, pos)
                        if line is not None:
                            self._refused(line)
                    case _:
                        raise ProtocolError(f"unexpected data in {self.progress.state.name}: {data[pos:]!r}")
        except SCPError as e:
            return self._fail(e)
        return Emit()

    def _on_line(self, line: bytes, stream: ChannelStream) -> None:
        if line[0] in (WARNING, FATAL):
            self._refused(line)
        if is_time_line(line):
            stream.write(OK)
            return
        header = ControlLine.parse(line)
        logger.debug(f"ScpFetch: header {line!r}")
        self.progress.header = header
        stream.write(OK)
        self.progress.state = (
            FetchState.RECEIVING_PAYLOAD if header.size > 0 else FetchState.AWAIT_TERMINATOR
        )

    def _on_payload(self, data: bytes, pos: int) -> int:
        assert self.progress.header is not None
        remaining = self.progress.header.size - self.progress.received
        chunk = data[pos : pos + remaining]
        if self.sink is not None:
            self.sink.write(chunk)
        else:
            self.progress.chunks.append(chunk)
        self.progress.received += len(chunk)
        if self.progress.received == self.progress.header.size:
            self.progress.state = FetchState.AWAIT_TERMINATOR
        return pos + len(chunk)

    def _refused(self, line: bytes) -> None:
        message = line[1:].rstrip(b"\n").decode(errors="replace")
        raise _Refusal(message or f"remote refused with code {line[0]}")

    def _fail(self, error: SCPError) -> Failed:
        if isinstance(error, _Refusal):
            error = SCPError(str(error))
        elif self.progress.stderr and not isinstance(error, ProtocolError):
            error = type(error)(self.progress.stderr.decode(errors="replace"))
        self.progress.state = FetchState.ERROR
        self.progress.failure = error
        return Failed(str(error))

    def on_done(self, stream: ChannelStream) -> bytes | int:
        """The payload, or the number of bytes written when a sink is used."""
        if self.progress.failure is not None:
            raise self.progress.failure
        if self.progress.state is not FetchState.DONE:
            raise SCPError(f"transfer incomplete in {self.progress.state.name}")
        if self.sink is not None:
            return self.progress.received
        return b"".join(self.progress.chunks)


class _Refusal(SCPError):
    """Remote sent a non-zero status byte followed by its diagnostic."""
