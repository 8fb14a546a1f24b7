"""Caller-facing API.

Every operation comes in two tiers sharing one implementation: the plain
function returns a structured result, the ``*_checked`` variant raises.

    conn = librarian.connect(SSHConfig("build.example.com", user="ci"))

    result = librarian.run(conn, "uname -a")
    if result.ok and result.exit_code == 0:
        print(result.payload)

    librarian.send_checked(conn, b"foo\\nbar\\n", "/tmp/notes.txt")
    assert librarian.fetch_checked(conn, "/tmp/notes.txt") == b"foo\\nbar\\n"
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import IO, Any

from loguru import logger

from librarian.aggregate import Shape, run
from librarian.channel import _UNSET, ChannelStream
from librarian.connection import Connection, connect
from librarian.events import Source
from librarian.exceptions import (
    ConfigurationError,
    ConnectionError,
    LibrarianError,
    RunError,
    SCPError,
    StreamError,
)
from librarian.redirect import PolicySpec
from librarian.result import Err, Ok, Result, RunPayload
from librarian.scp import ScpFetch, ScpSend, transfer
from librarian.scp.header import DEFAULT_PERMISSIONS, ControlLine, remote_basename, sink_command, source_command
from librarian.scp.source import Content, payload_from


def stream(conn: Connection, command: str, **options: Any) -> Result[ChannelStream]:
    """Build a pass-through stream for ``command``.

    Accepts the keyword options of ``ChannelStream.build``. Build failures
    come back as ``Err``.
    """
    try:
        return Ok(ChannelStream.build(conn, command, **options))
    except LibrarianError as e:
        return Err(str(e), error=type(e))


def stream_checked(conn: Connection, command: str, **options: Any) -> ChannelStream:
    """Like ``stream`` but raises, also while iterating on a non-zero exit."""
    options.setdefault("check", True)
    match stream(conn, command, **options):
        case Ok(value=s):
            return s
        case Err(reason=reason):
            raise StreamError(f"error creating ssh stream: {reason}")


def run_checked(
    conn: Connection,
    command: str,
    *,
    io_tuple: bool = False,
    stdout: PolicySpec | None = None,
    stderr: PolicySpec | None = None,
    redirects: Iterable[tuple[Source, PolicySpec]] = (),
    **options: Any,
) -> RunPayload:
    """Like ``run`` but returns only the output and raises on any failure.

    Stderr is captured separately, unless redirected or another ``as_``
    shape is requested, so it can be quoted in the error.

    Raises:
        RunError: The command exited non-zero.
        StreamError: The channel failed before the command completed.
    """
    as_ = options.pop("as_", None)
    as_tuple = io_tuple or as_ == "tuple"
    capture = as_tuple or (as_ is None and stdout is None and stderr is None and not redirects)
    if capture:
        result = run(conn, command, as_="tuple", **options)
    else:
        result = run(
            conn, command, as_=as_ or "binary", stdout=stdout, stderr=stderr, redirects=redirects, **options
        )

    if not result.ok:
        raise StreamError(result.reason or "unknown error", _partial(result.payload))

    match result.payload:
        case (out, err) if capture:
            if result.exit_code not in (None, 0):
                raise RunError(command, result.exit_code, err.decode(errors="replace").strip())
            return (out, err) if as_tuple else out
        case payload:
            if result.exit_code not in (None, 0):
                raise RunError(command, result.exit_code)
            return payload


def _partial(payload: RunPayload) -> tuple[Any, ...]:
    match payload:
        case bytes():
            return (payload,) if payload else ()
        case list():
            return tuple(payload)
        case (out, err):
            return tuple(chunk for chunk in (out, err) if chunk)


def send(
    conn: Connection,
    content: Content,
    remote_path: str,
    *,
    permissions: int = DEFAULT_PERMISSIONS,
    size: int | None = None,
    data_timeout: float | None = _UNSET,
) -> Result[None]:
    """Copy ``content`` to ``remote_path`` over SCP.

    ``content`` can be bytes, str, a local ``Path``, a binary file object or
    an iterable of chunks (``size`` required for one-shot iterables). Large
    sources are streamed without being read into memory.
    """
    try:
        payload = payload_from(content, size=size, chunk_size=conn.settings.chunk_size)
        header = ControlLine(permissions & 0o7777, payload.size, remote_basename(remote_path))
        s = ChannelStream.build(
            conn,
            sink_command(remote_path),
            module=ScpSend(header, payload),
            data_timeout=conn.settings.scp_timeout if data_timeout is _UNSET else data_timeout,
        )
    except LibrarianError as e:
        return Err(str(e), error=type(e))

    logger.debug(f"SCP: sending {header.size} bytes to {remote_path}")
    result = transfer(s)
    return Ok(None) if result.ok else result


def send_checked(conn: Connection, content: Content, remote_path: str, **options: Any) -> None:
    match send(conn, content, remote_path, **options):
        case Err(reason=reason, error=error):
            raise _scp_error(error, f"error executing SCP send: {reason}")


def fetch(
    conn: Connection,
    remote_path: str,
    *,
    sink: IO[bytes] | None = None,
    data_timeout: float | None = _UNSET,
) -> Result[Any]:
    """Copy ``remote_path`` from the remote host over SCP.

    Returns the file contents, or the number of bytes written when a binary
    ``sink`` is given.
    """
    try:
        s = ChannelStream.build(
            conn,
            source_command(remote_path),
            module=ScpFetch(sink),
            data_timeout=conn.settings.scp_timeout if data_timeout is _UNSET else data_timeout,
        )
    except LibrarianError as e:
        return Err(str(e), error=type(e))

    logger.debug(f"SCP: fetching {remote_path}")
    return transfer(s)


def fetch_checked(conn: Connection, remote_path: str, **options: Any) -> Any:
    match fetch(conn, remote_path, **options):
        case Ok(value=value):
            return value
        case Err(reason=reason, error=error):
            raise _scp_error(error, f"error executing SCP fetch: {reason}")


def _scp_error(error: type[LibrarianError], message: str) -> LibrarianError:
    if issubclass(error, SCPError | ConfigurationError | ConnectionError):
        return error(message)
    return SCPError(message)


__all__ = [
    "Shape",
    "connect",
    "fetch",
    "fetch_checked",
    "run",
    "run_checked",
    "send",
    "send_checked",
    "stream",
    "stream_checked",
]
