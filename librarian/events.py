"""Algebraic Data Types for channel events and stream items.

Channel events are what the adapter hands to the engine, one at a time and
in provider order:

    Data(source, payload) | Eof | ExitStatus(code) | ProviderError(reason)
    | Timeout | Closed

Stream items are what consumers see when they iterate a ChannelStream:

- ``bytes`` for a plain chunk (``stream`` redirect)
- ``(source, bytes)`` for a tagged chunk (``raw`` redirect)
- ``Eof`` and ``ExitStatus`` when control messages are enabled
- ``ProviderError`` as the last item of a failed stream

Use pattern matching to handle them:

    match item:
        case bytes() as chunk:
            out.write(chunk)
        case ("stderr", chunk):
            err.write(chunk)
        case ExitStatus(code=code):
            print(f"exited with {code}")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

type Source = Literal["stdout", "stderr"]

SOURCES: tuple[Source, Source] = ("stdout", "stderr")


@dataclass(frozen=True, slots=True)
class Data:
    """A chunk of output from one source."""

    source: Source
    payload: bytes


@dataclass(frozen=True, slots=True)
class Eof:
    """The remote closed its side of the channel for writing."""


@dataclass(frozen=True, slots=True)
class ExitStatus:
    """The remote command exited."""

    code: int


@dataclass(frozen=True, slots=True)
class ProviderError:
    """The provider reported a failure on the channel."""

    reason: str


@dataclass(frozen=True, slots=True)
class Timeout:
    """No event arrived within the idle timeout."""


@dataclass(frozen=True, slots=True)
class Closed:
    """The provider feed for the channel is exhausted."""


type StreamEvent = Data | Eof | ExitStatus | ProviderError | Timeout | Closed

type TaggedChunk = tuple[Source, bytes]

# Transform redirects may emit arbitrary values.
type StreamItem = bytes | TaggedChunk | Eof | ExitStatus | ProviderError | Any
