"""Output policies: where each source's chunks go.

A policy is chosen per source (stdout, stderr) when a stream is built and
never changes afterwards. Accepted specs:

- ``"stream"``: the chunk becomes a stream item.
- ``"raw"``: the chunk becomes a ``(source, chunk)`` stream item.
- ``"stdout"`` / ``"stderr"``: written to this process's stdout/stderr.
- ``"silent"``: dropped.
- ``File(path)`` or ``("file", path)``: appended to a local file.
- ``fn(chunk) -> list``: items flat-mapped into the stream.
- ``fn(chunk, data) -> (list, data)``: same, threading the stream's
  ``data`` slot through each call.
"""

from __future__ import annotations

import inspect
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Literal

from librarian.events import SOURCES, Source, StreamItem
from librarian.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class Silent:
    pass


@dataclass(frozen=True, slots=True)
class ToStdout:
    pass


@dataclass(frozen=True, slots=True)
class ToStderr:
    pass


@dataclass(frozen=True, slots=True)
class ToStream:
    pass


@dataclass(frozen=True, slots=True)
class Raw:
    pass


@dataclass(frozen=True, slots=True)
class File:
    path: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))


@dataclass(frozen=True, slots=True)
class Transform:
    fn: Callable[..., Any]
    arity: Literal[1, 2]


type Policy = Silent | ToStdout | ToStderr | ToStream | Raw | File | Transform

type PolicySpec = (
    Literal["silent", "stdout", "stderr", "stream", "raw"]
    | Policy
    | tuple[Literal["file"], str | Path]
    | Callable[..., Any]
)

_NAMED: dict[str, Policy] = {
    "silent": Silent(),
    "stdout": ToStdout(),
    "stderr": ToStderr(),
    "stream": ToStream(),
    "raw": Raw(),
}


def _arity(fn: Callable[..., Any]) -> int:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"cannot inspect redirect function {fn!r}") from e
    positional = [
        p for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty
    ]
    return len(positional)


def as_policy(spec: PolicySpec) -> Policy:
    match spec:
        case str() if spec in _NAMED:
            return _NAMED[spec]
        case Silent() | ToStdout() | ToStderr() | ToStream() | Raw() | File() | Transform():
            return spec
        case ("file", str() | Path() as path):
            return File(path)
        case _ if callable(spec):
            arity = _arity(spec)
            if arity not in (1, 2):
                raise ConfigurationError(
                    f"redirect functions take (chunk) or (chunk, data), {spec!r} takes {arity} arguments"
                )
            return Transform(spec, arity)  # type: ignore[arg-type]
        case _:
            raise ConfigurationError(f"invalid redirect {spec!r}")


@dataclass(frozen=True, slots=True)
class Redirects:
    """The resolved policy for each source."""

    stdout: Policy = ToStream()
    stderr: Policy = ToStderr()

    def for_source(self, source: Source) -> Policy:
        return self.stdout if source == "stdout" else self.stderr


def resolve_redirects(
    *,
    stdout: PolicySpec | None = None,
    stderr: PolicySpec | None = None,
    redirects: Iterable[tuple[Source, PolicySpec]] = (),
    default: Redirects = Redirects(),
) -> Redirects:
    """Resolve exactly one policy per source.

    ``redirects`` lets callers pass ``(source, spec)`` pairs, e.g. built up
    from several option sources. Repeating a source with the same policy is
    harmless; repeating it with a different one raises ConfigurationError.
    """
    requested: dict[Source, list[Policy]] = {source: [] for source in SOURCES}
    for source, spec in redirects:
        if source not in requested:
            raise ConfigurationError(f"unknown redirect source {source!r}, expected stdout or stderr")
        requested[source].append(as_policy(spec))
    if stdout is not None:
        requested["stdout"].append(as_policy(stdout))
    if stderr is not None:
        requested["stderr"].append(as_policy(stderr))

    resolved: dict[Source, Policy] = {}
    for source, policies in requested.items():
        distinct = list(dict.fromkeys(policies))
        if len(distinct) > 1:
            raise ConfigurationError(
                f"conflicting redirects for {source}: {', '.join(repr(p) for p in distinct)}"
            )
        resolved[source] = distinct[0] if distinct else default.for_source(source)

    return Redirects(stdout=resolved["stdout"], stderr=resolved["stderr"])


def _write_through(stream: IO[Any], chunk: bytes) -> None:
    buffer = getattr(stream, "buffer", None)
    if buffer is not None:
        buffer.write(chunk)
        buffer.flush()
    else:
        stream.write(chunk.decode(errors="replace"))
        stream.flush()


class RedirectSink:
    """Applies resolved policies to chunks and owns the files they write to."""

    __slots__ = ("_redirects", "_files")

    def __init__(self, redirects: Redirects) -> None:
        self._redirects = redirects
        self._files: dict[Path, IO[bytes]] = {}

    @property
    def redirects(self) -> Redirects:
        return self._redirects

    def _file(self, path: Path) -> IO[bytes]:
        if path not in self._files:
            self._files[path] = path.open("ab")
        return self._files[path]

    def apply(self, source: Source, chunk: bytes, data: Any) -> tuple[list[StreamItem], Any]:
        """Route one chunk; returns the items to emit and the updated data slot."""
        match self._redirects.for_source(source):
            case ToStream():
                return [chunk], data
            case Raw():
                return [(source, chunk)], data
            case Silent():
                return [], data
            case ToStdout():
                _write_through(sys.stdout, chunk)
                return [], data
            case ToStderr():
                _write_through(sys.stderr, chunk)
                return [], data
            case File(path=path):
                self._file(path).write(chunk)
                return [], data
            case Transform(fn=fn, arity=1):
                return list(fn(chunk)), data
            case Transform(fn=fn, arity=2):
                items, data = fn(chunk, data)
                return list(items), data
        raise AssertionError("unreachable")

    def close(self) -> None:
        files, self._files = self._files, {}
        for f in files.values():
            f.close()
