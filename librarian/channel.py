"""Channel stream engine.

A ChannelStream runs one remote command and turns the channel's events
into a pull-based sequence:

    with ChannelStream.build(conn, "tail -n 100 /var/log/syslog") as stream:
        for chunk in stream:
            ...

Each pull blocks until the provider delivers one event or the idle
timeout elapses, hands the event to the active protocol module and returns
what the module decided (``Emit``, ``Done`` or ``Failed``). The channel and
any files opened by redirects are released on every exit path, including a
consumer that stops iterating early.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from loguru import logger

from librarian.adapter import EventFeed
from librarian.connection import Connection
from librarian.events import ExitStatus, ProviderError, Source, StreamItem
from librarian.exceptions import ConfigurationError, RunError, StreamError
from librarian.modules import Done, Emit, Failed, Passthrough, Step
from librarian.redirect import PolicySpec, Redirects, RedirectSink, resolve_redirects
from librarian.scp.fetch import ScpFetch
from librarian.scp.send import ScpSend

type Module = Passthrough | ScpSend | ScpFetch

_UNSET: Any = object()


def _check_timeout(data_timeout: float | None) -> float | None:
    if data_timeout is None or data_timeout == math.inf:
        return None
    if isinstance(data_timeout, bool) or not isinstance(data_timeout, int | float):
        raise ConfigurationError(f"data_timeout must be a number of seconds or None, got {data_timeout!r}")
    if data_timeout <= 0:
        raise ConfigurationError(f"data_timeout must be positive, got {data_timeout}")
    return float(data_timeout)


def _as_bytes(data: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(data, str):
        return data.encode()
    return bytes(data)


class ChannelStream:
    """One command channel exposed as a stream of items.

    Attributes:
        connection: Connection the channel was opened on.
        command: Remote command line.
        redirects: Resolved policy per source.
        control_messages: Whether ``Eof`` and ``ExitStatus`` are emitted as items.
        data_timeout: Idle timeout per pull in seconds, None for no timeout.
        module: Active protocol module.
        check: Raise on failure and on non-zero exit while iterating.
        data: Slot threaded through two-argument redirect functions.
        exit_code: Exit status once the remote reported it.
    """

    __slots__ = (
        "connection",
        "command",
        "redirects",
        "control_messages",
        "data_timeout",
        "module",
        "check",
        "data",
        "exit_code",
        "sink",
        "_channel",
        "_feed",
        "_outcome",
        "_closed",
    )

    def __init__(
        self,
        connection: Connection,
        channel: Any,
        command: str,
        redirects: Redirects,
        control_messages: bool,
        data_timeout: float | None,
        module: Module,
        check: bool,
    ) -> None:
        self.connection = connection
        self.command = command
        self.redirects = redirects
        self.control_messages = control_messages
        self.data_timeout = data_timeout
        self.module = module
        self.check = check
        self.data: Any = None
        self.exit_code: int | None = None
        self.sink = RedirectSink(redirects)
        self._channel = channel
        self._feed = EventFeed(connection.provider, channel)
        self._outcome: Done | Failed | None = None
        self._closed = False

    @classmethod
    def build(
        cls,
        connection: Connection,
        command: str,
        *,
        stdout: PolicySpec | None = None,
        stderr: PolicySpec | None = None,
        redirects: Iterable[tuple[Source, PolicySpec]] = (),
        control_messages: bool = False,
        data_timeout: float | None = _UNSET,
        module: Module | None = None,
        check: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> ChannelStream:
        """Open a channel for ``command`` and prepare it for pulling.

        Options are validated before the channel is opened. ``env`` is set in the
        remote command's environment; sshd drops variables its ``AcceptEnv``
        does not list.

        Raises:
            ConfigurationError: Empty command, conflicting redirects or a bad timeout.
            ConnectionError: The provider could not open the channel.
        """
        if not command or not command.strip():
            raise ConfigurationError("command must not be empty")
        if data_timeout is _UNSET:
            data_timeout = connection.settings.data_timeout
        timeout = _check_timeout(data_timeout)
        resolved = resolve_redirects(stdout=stdout, stderr=stderr, redirects=redirects)
        module = module if module is not None else Passthrough()

        channel = connection.provider.open_channel(connection.handle, command, env)
        stream = cls(connection, channel, command, resolved, control_messages, timeout, module, check)
        logger.debug(f"ChannelStream: opened `{command[:80]}` ({type(module).__name__})")

        try:
            module.initialize(stream)
        except BaseException:
            stream.close()
            raise
        return stream

    # -------------------------------------------------------------------------
    # Pull side
    # -------------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> Done | Failed | None:
        return self._outcome

    def pull(self) -> Step:
        """Process exactly one event.

        Returns ``Emit`` while the stream is live and ``Done`` or ``Failed``
        once; afterwards every pull returns ``Done()``.
        """
        if self._outcome is not None or self._closed:
            return Done()

        event = self._feed.next(self.data_timeout)
        if isinstance(event, ExitStatus):
            self.exit_code = event.code

        try:
            step = self.module.on_event(event, self)
        except StreamError as e:
            step = Failed(e.reason, e.partial)

        if isinstance(step, Done | Failed):
            self._finish(step)
        return step

    def _finish(self, step: Done | Failed) -> None:
        self._outcome = step
        if isinstance(step, Failed):
            logger.warning(f"ChannelStream: `{self.command[:80]}` failed: {step.reason}")
        else:
            logger.debug(f"ChannelStream: `{self.command[:80]}` done (exit={self.exit_code})")
        self.close()

    def result(self) -> Any:
        """The active module's final result."""
        return self.module.on_done(self)

    def __iter__(self) -> Iterator[StreamItem]:
        try:
            while True:
                step = self.pull()
                yield from step.items
                match step:
                    case Emit():
                        continue
                    case Done():
                        break
                    case Failed(reason=reason, items=items):
                        if self.check or not self.control_messages:
                            raise StreamError(reason, items)
                        yield ProviderError(reason)
                        break
            if self.check and self.exit_code not in (None, 0):
                raise RunError(self.command, self.exit_code)
        finally:
            self.close()

    # -------------------------------------------------------------------------
    # Push side
    # -------------------------------------------------------------------------

    def write(self, data: bytes | bytearray | memoryview | str) -> ChannelStream:
        """Send ``data`` to the remote command's stdin. Not acknowledged."""
        if self._closed:
            raise StreamError(f"write to closed stream `{self.command[:80]}`")
        payload = _as_bytes(data)
        if payload:
            self.connection.provider.send(self._channel, payload)
        return self

    def send_eof(self) -> ChannelStream:
        """Close the remote command's stdin."""
        if self._closed:
            raise StreamError(f"eof on closed stream `{self.command[:80]}`")
        self.connection.provider.send_eof(self._channel)
        return self

    def feed(self, chunks: Iterable[bytes | bytearray | memoryview | str]) -> ChannelStream:
        """Write every chunk to stdin, then send eof."""
        for chunk in chunks:
            self.write(chunk)
        return self.send_eof()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the channel and redirect files. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self.connection.provider.close(self._channel)
        finally:
            self.sink.close()

    def __enter__(self) -> ChannelStream:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ChannelStream(command={self.command!r}, module={type(self.module).__name__})"
