"""Normalizes raw provider events into channel events."""

from __future__ import annotations

from typing import Any

from librarian.events import Closed, Data, Eof, ExitStatus, ProviderError, StreamEvent, Timeout
from librarian.provider import STDERR_CODE, STDOUT_CODE, Provider, RawEvent


def adapt(raw: RawEvent | None) -> StreamEvent:
    """Map one raw provider event (None meaning timeout) to a StreamEvent."""
    match raw:
        case None:
            return Timeout()
        case ("data", int(code), bytes() | bytearray() | memoryview() as payload):
            if code == STDOUT_CODE:
                return Data("stdout", bytes(payload))
            if code == STDERR_CODE:
                return Data("stderr", bytes(payload))
            return ProviderError(f"unknown data type code {code}")
        case ("eof",):
            return Eof()
        case ("exit_status", int(code)):
            return ExitStatus(code)
        case ("closed",):
            return Closed()
        case ("error", reason):
            return ProviderError(str(reason))
        case _:
            return ProviderError(f"unexpected provider event {raw!r}")


class EventFeed:
    """Pulls adapted events for one channel, one at a time."""

    __slots__ = ("_provider", "_channel")

    def __init__(self, provider: Provider, channel: Any) -> None:
        self._provider = provider
        self._channel = channel

    def next(self, timeout: float | None) -> StreamEvent:
        return adapt(self._provider.receive(self._channel, timeout))
