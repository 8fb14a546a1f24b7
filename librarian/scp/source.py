"""Payload sources for SCP send.

The size must be known before the first byte is sent, so every source is
reduced to ``(size, chunk factory)``. Chunks are produced lazily: files are
read ``chunk_size`` bytes at a time and iterators are consumed as the
transfer goes.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

from librarian.exceptions import ConfigurationError, SCPError

type Content = bytes | bytearray | memoryview | str | os.PathLike[str] | IO[bytes] | Iterable[Any]


@dataclass(frozen=True, slots=True)
class Payload:
    size: int
    chunks: Callable[[], Iterator[bytes]]


def _flatten(content: Iterable[Any]) -> Iterator[bytes]:
    for part in content:
        match part:
            case bytes() | bytearray() | memoryview():
                yield bytes(part)
            case str():
                yield part.encode()
            case int() if 0 <= part <= 255:
                yield bytes((part,))
            case Iterable():
                yield from _flatten(part)
            case _:
                raise ConfigurationError(f"cannot send {type(part).__name__} as SCP content")


def _iodata_size(content: Iterable[Any]) -> int:
    return sum(len(chunk) for chunk in _flatten(content))


def _read_file(path: Path, chunk_size: int) -> Iterator[bytes]:
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk


def _read_handle(handle: IO[bytes], chunk_size: int) -> Iterator[bytes]:
    while chunk := handle.read(chunk_size):
        yield chunk


def _handle_size(handle: IO[bytes]) -> int:
    try:
        return os.fstat(handle.fileno()).st_size - handle.tell()
    except (AttributeError, OSError, ValueError):
        pass
    if handle.seekable():
        start = handle.tell()
        end = handle.seek(0, os.SEEK_END)
        handle.seek(start)
        return end - start
    raise ConfigurationError("size is required for unseekable file objects")


def _describe(content: Content, size: int | None, chunk_size: int) -> Payload:
    match content:
        case bytes() | bytearray() | memoryview():
            data = bytes(content)
            return Payload(len(data), lambda: iter((data,) if data else ()))
        case str():
            data = content.encode()
            return Payload(len(data), lambda: iter((data,) if data else ()))
        case os.PathLike():
            path = Path(content)
            try:
                file_size = path.stat().st_size
            except OSError as e:
                raise SCPError(f"error getting file size for {path}: {e}") from e
            return Payload(file_size, lambda: _read_file(path, chunk_size))
        case _ if hasattr(content, "read"):
            handle: IO[bytes] = content  # type: ignore[assignment]
            handle_size = size if size is not None else _handle_size(handle)
            return Payload(handle_size, lambda: _read_handle(handle, chunk_size))
        case list() | tuple():
            parts = content
            return Payload(_iodata_size(parts), lambda: _flatten(parts))
        case Iterable():
            if size is None:
                raise ConfigurationError("size is required when sending a streamed iterable")
            parts = content
            return Payload(size, lambda: _flatten(parts))
        case _:
            raise ConfigurationError(f"cannot send {type(content).__name__} over SCP")


def payload_from(content: Content, *, size: int | None = None, chunk_size: int = 65536) -> Payload:
    """Describe ``content`` as a sized, lazily-read payload.

    Accepted content:
        bytes-like or str: sent as is (str is UTF-8 encoded).
        Path: the local file is streamed; size comes from stat.
        binary file object: read from its current position.
        list or tuple of chunks (nested allowed): size is summed up front.
        any other iterable of chunks: streamed; ``size`` is required.

    Raises:
        ConfigurationError: Unsupported content, or ``size`` disagrees with it.
    """
    payload = _describe(content, size, chunk_size)
    if size is not None and payload.size != size:
        raise ConfigurationError(f"size {size} does not match content size {payload.size}")
    return payload
