"""Run aggregator: fold a command stream into one result."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from librarian.channel import _UNSET, ChannelStream
from librarian.connection import Connection
from librarian.events import Eof, ExitStatus, ProviderError, Source, StreamItem
from librarian.exceptions import ConfigurationError, ConnectionError
from librarian.redirect import PolicySpec
from librarian.result import RunPayload, RunResult, RunStatus

type Shape = Literal["binary", "iolist", "tuple"]

SHAPES: tuple[Shape, ...] = ("binary", "iolist", "tuple")


@dataclass(slots=True)
class Accumulator:
    status: RunStatus = "error"
    chunks: list[StreamItem] = field(default_factory=list)
    exit_code: int | None = None
    reason: str | None = None

    def consume(self, item: StreamItem) -> bool:
        """Fold one item in. Returns False once nothing more should be read."""
        match item:
            case Eof():
                self.status = "ok"
            case ExitStatus(code=code):
                self.exit_code = code
            case ProviderError(reason=reason):
                self.status = "error"
                self.reason = reason
                return False
            case _:
                self.chunks.append(item)
        return True


def _to_bytes(item: StreamItem) -> bytes:
    match item:
        case bytes() | bytearray() | memoryview():
            return bytes(item)
        case str():
            return item.encode()
        case (str(), bytes() as chunk):
            return chunk
        case _:
            raise ConfigurationError(f"cannot flatten {type(item).__name__} into binary output")


def shape_output(chunks: list[StreamItem], as_: Shape) -> RunPayload:
    match as_:
        case "binary":
            return b"".join(_to_bytes(c) for c in chunks)
        case "iolist":
            return list(chunks)
        case "tuple":
            grouped: dict[Source, list[bytes]] = {"stdout": [], "stderr": []}
            for chunk in chunks:
                match chunk:
                    case ("stdout" | "stderr" as source, bytes() as payload):
                        grouped[source].append(payload)
                    case _:
                        grouped["stdout"].append(_to_bytes(chunk))
            return b"".join(grouped["stdout"]), b"".join(grouped["stderr"])
    raise ConfigurationError(f"unknown output shape {as_!r}, expected one of {', '.join(SHAPES)}")


@dataclass(frozen=True, slots=True)
class RunPlan:
    """A run request after option rewriting."""

    command: str
    as_: Shape
    stdout: PolicySpec | None
    stderr: PolicySpec | None
    redirects: tuple[tuple[Source, PolicySpec], ...]


def plan_run(
    command: str,
    *,
    as_: Shape = "binary",
    dir: str | None = None,  # noqa: A002
    io_tuple: bool = False,
    stdout: PolicySpec | None = None,
    stderr: PolicySpec | None = None,
    redirects: Iterable[tuple[Source, PolicySpec]] = (),
) -> RunPlan:
    """Apply ``dir``, ``io_tuple`` and tuple shaping to the raw options.

    Tuple shaping captures both sources tagged, overriding any redirect the
    caller asked for.
    """
    if as_ not in SHAPES:
        raise ConfigurationError(f"unknown output shape {as_!r}, expected one of {', '.join(SHAPES)}")
    if dir:
        command = f"cd {dir}; {command}"
    if io_tuple or as_ == "tuple":
        return RunPlan(command, "tuple", "raw", "raw", ())
    return RunPlan(command, as_, stdout, stderr, tuple(redirects))


def aggregate(stream: ChannelStream, as_: Shape) -> RunResult:
    """Drain ``stream`` (built with control messages) into a RunResult."""
    acc = Accumulator()
    with stream:
        for item in stream:
            if not acc.consume(item):
                break
    if acc.exit_code is None:
        acc.exit_code = stream.exit_code
    if acc.status == "error" and acc.reason is None:
        acc.reason = "channel closed before eof"
    return RunResult(
        status=acc.status,
        payload=shape_output(acc.chunks, as_),
        exit_code=acc.exit_code,
        reason=acc.reason,
    )


def run(
    conn: Connection,
    command: str,
    *,
    as_: Shape = "binary",
    dir: str | None = None,  # noqa: A002
    io_tuple: bool = False,
    stdout: PolicySpec | None = None,
    stderr: PolicySpec | None = None,
    redirects: Iterable[tuple[Source, PolicySpec]] = (),
    input: bytes | str | Iterable[bytes | str] | None = None,  # noqa: A002
    data_timeout: float | None = _UNSET,
    env: Mapping[str, str] | None = None,
) -> RunResult:
    """Run ``command`` and collect its output.

    Args:
        conn: Connection to run on.
        command: Remote command line.
        as_: ``"binary"`` (default) joins the output, ``"iolist"`` keeps the
            chunk list, ``"tuple"`` returns ``(stdout, stderr)`` and overrides
            any redirects.
        dir: Run the command from this remote directory.
        io_tuple: Same as ``as_="tuple"``.
        stdout: Redirect for stdout, see ``librarian.redirect``.
        stderr: Redirect for stderr, see ``librarian.redirect``.
        redirects: Additional ``(source, redirect)`` pairs.
        input: Written to the command's stdin, followed by eof.
        data_timeout: Idle timeout per event; defaults to the connection settings.
        env: Environment variables for the remote command.

    Returns:
        ``RunResult("ok", payload, exit_code)`` once the channel completes,
        ``RunResult("error", partial_payload, exit_code, reason)`` otherwise.

    Raises:
        ConfigurationError: Invalid options; nothing is run.
    """
    plan = plan_run(
        command,
        as_=as_,
        dir=dir,
        io_tuple=io_tuple,
        stdout=stdout,
        stderr=stderr,
        redirects=redirects,
    )
    try:
        stream = ChannelStream.build(
            conn,
            plan.command,
            stdout=plan.stdout,
            stderr=plan.stderr,
            redirects=plan.redirects,
            control_messages=True,
            data_timeout=data_timeout,
            env=env,
        )
    except ConnectionError as e:
        return RunResult(status="error", payload=shape_output([], plan.as_), exit_code=None, reason=str(e))

    if input is not None:
        _feed_input(stream, input)
    return aggregate(stream, plan.as_)


def _feed_input(stream: ChannelStream, data: Any) -> None:
    try:
        if isinstance(data, bytes | bytearray | memoryview | str):
            stream.write(data).send_eof()
        else:
            stream.feed(data)
    except BaseException:
        stream.close()
        raise
