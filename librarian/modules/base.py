"""Protocol module interface.

A protocol module decides what each channel event means for one stream:
what to emit, when the stream is finished, and what the final result is.
The engine only sequences events, detects idle timeouts and tears the
channel down.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from librarian.events import StreamEvent, StreamItem

if TYPE_CHECKING:
    from librarian.channel import ChannelStream


@dataclass(frozen=True, slots=True)
class Emit:
    """Keep going; hand these items to the consumer."""

    items: tuple[StreamItem, ...] = ()


@dataclass(frozen=True, slots=True)
class Done:
    """The stream finished normally."""

    items: tuple[StreamItem, ...] = ()


@dataclass(frozen=True, slots=True)
class Failed:
    """The stream failed. ``items`` were produced by the failing step."""

    reason: str
    items: tuple[StreamItem, ...] = ()


type Step = Emit | Done | Failed


class ProtocolModule(Protocol):
    def initialize(self, stream: ChannelStream) -> None:
        """Called once after the channel opens, before the first pull."""
        ...

    def on_event(self, event: StreamEvent, stream: ChannelStream) -> Step:
        """Interpret one channel event."""
        ...

    def on_done(self, stream: ChannelStream) -> Any:
        """Final result once the stream is done."""
        ...
