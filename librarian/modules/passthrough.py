"""Default module: route output through the stream's redirect policies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from librarian.events import Closed, Data, Eof, ExitStatus, ProviderError, StreamEvent, Timeout
from librarian.modules.base import Done, Emit, Failed, Step

if TYPE_CHECKING:
    from librarian.channel import ChannelStream


@dataclass(slots=True)
class PassthroughState:
    eof: bool = False
    timeouts: int = 0


class Passthrough:
    """Emits chunks per redirect policy and control messages on request.

    Without control messages, item production ends at ``Eof``; the engine
    keeps draining silently so the exit status is still recorded. Idle
    timeouts are ignored unless ``timeout_fatal`` is set.
    """

    __slots__ = ("timeout_fatal", "state")

    def __init__(self, *, timeout_fatal: bool = False) -> None:
        self.timeout_fatal = timeout_fatal
        self.state = PassthroughState()

    def initialize(self, stream: ChannelStream) -> None:
        pass

    def on_event(self, event: StreamEvent, stream: ChannelStream) -> Step:
        match event:
            case Data(source=source, payload=payload):
                if self.state.eof and not stream.control_messages:
                    return Emit()
                items, stream.data = stream.sink.apply(source, payload, stream.data)
                return Emit(tuple(items))
            case Eof():
                self.state.eof = True
                return Emit((event,)) if stream.control_messages else Emit()
            case ExitStatus():
                return Emit((event,)) if stream.control_messages else Emit()
            case Timeout():
                self.state.timeouts += 1
                if self.timeout_fatal:
                    return Failed(f"no data from `{stream.command}` within {stream.data_timeout}s")
                return Emit()
            case ProviderError(reason=reason):
                return Failed(reason)
            case Closed():
                return Done()

    def on_done(self, stream: ChannelStream) -> int | None:
        return stream.exit_code
