"""Secure channel providers.

A provider opens command channels on an already-authenticated connection
handle and exposes each channel as a feed of raw events:

    ("data", type_code, payload)   type_code 0 = stdout, 1 = stderr
    ("eof",)
    ("exit_status", code)
    ("closed",)
    ("error", reason)

``receive`` returns None when no event arrives within the timeout. The
adapter turns raw events into ``librarian.events`` types.

ParamikoProvider is the default implementation. Tests plug in scripted
providers implementing the same protocol.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from queue import Empty, Full, Queue
from typing import Any, Protocol, runtime_checkable

import paramiko
from loguru import logger

from librarian.config import DEFAULT_SETTINGS, Settings
from librarian.exceptions import ConnectionError, StreamError
from librarian.internal.rethrow import rethrow

type RawEvent = tuple[Any, ...]

STDOUT_CODE = 0
STDERR_CODE = 1  # SSH_EXTENDED_DATA_STDERR

_EXIT_STATUS_POLL = 0.05
_PUT_POLL = 0.1
_JOIN_TIMEOUT = 1.0


@runtime_checkable
class Provider(Protocol):
    """Contract between the stream engine and a channel implementation."""

    def open_channel(self, handle: Any, command: str, env: Mapping[str, str] | None = None) -> Any:
        """Open a channel running ``command`` with ``env`` set in its environment.

        Raises:
            ConnectionError: If the channel cannot be opened.
        """
        ...

    def send(self, channel: Any, data: bytes) -> None:
        """Write ``data`` to the channel's stdin.

        Raises:
            StreamError: If the channel rejects the write.
        """
        ...

    def send_eof(self, channel: Any) -> None:
        """Signal end of input on the channel."""
        ...

    def receive(self, channel: Any, timeout: float | None) -> RawEvent | None:
        """Block for the next raw event, or None after ``timeout`` seconds."""
        ...

    def close(self, channel: Any) -> None:
        """Release the channel. Must be idempotent."""
        ...


class ChannelPump:
    """Drains a paramiko Channel into a bounded event queue.

    One reader thread per source. When the queue is full the readers stop
    calling recv, paramiko's receive window fills up and the remote is
    throttled; that is the whole backpressure story.

    After both sources hit EOF the pump emits ``eof``, the exit status (when
    the remote sent one) and ``closed``.
    """

    __slots__ = ("_channel", "_queue", "_read_size", "_stop", "_lock", "_open_sources", "_threads")

    def __init__(self, channel: paramiko.Channel, queue_size: int, read_size: int) -> None:
        self._channel = channel
        self._queue: Queue[RawEvent] = Queue(maxsize=queue_size)
        self._read_size = read_size
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._open_sources = 2
        self._threads = [
            threading.Thread(
                target=self._read,
                args=(STDOUT_CODE, channel.recv),
                daemon=True,
                name=f"librarian-chan{channel.get_id()}-stdout",
            ),
            threading.Thread(
                target=self._read,
                args=(STDERR_CODE, channel.recv_stderr),
                daemon=True,
                name=f"librarian-chan{channel.get_id()}-stderr",
            ),
        ]
        for t in self._threads:
            t.start()

    @property
    def channel(self) -> paramiko.Channel:
        return self._channel

    def _put(self, event: RawEvent) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(event, timeout=_PUT_POLL)
                return True
            except Full:
                continue
        return False

    def _read(self, code: int, recv: Callable[[int], bytes]) -> None:
        try:
            while not self._stop.is_set():
                chunk = recv(self._read_size)
                if not chunk:
                    break
                if not self._put(("data", code, chunk)):
                    return
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"ChannelPump: read failed on channel {self._channel.get_id()}: {e}")
            self._put(("error", str(e) or type(e).__name__))
        finally:
            self._source_finished()

    def _source_finished(self) -> None:
        with self._lock:
            self._open_sources -= 1
            last = self._open_sources == 0
        if not last or self._stop.is_set():
            return

        self._put(("eof",))
        code = self._await_exit_status()
        if code is not None:
            self._put(("exit_status", code))
        elif not self._transport_active():
            self._put(("error", "connection lost"))
            return
        self._put(("closed",))

    def _await_exit_status(self) -> int | None:
        while not self._stop.is_set():
            if self._channel.exit_status_ready():
                return self._channel.recv_exit_status()
            if self._channel.closed:
                # exit-status may race the close
                return self._channel.recv_exit_status() if self._channel.exit_status_ready() else None
            self._stop.wait(_EXIT_STATUS_POLL)
        return None

    def _transport_active(self) -> bool:
        transport = self._channel.get_transport()
        return transport is not None and transport.is_active()

    def get(self, timeout: float | None) -> RawEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def stop(self) -> None:
        self._stop.set()
        self._channel.close()
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(_JOIN_TIMEOUT)


def _transport_of(handle: Any) -> paramiko.Transport | None:
    if isinstance(handle, paramiko.SSHClient):
        return handle.get_transport()
    if isinstance(handle, paramiko.Transport):
        return handle
    raise TypeError(f"Expected paramiko SSHClient or Transport, got {type(handle).__name__}")


class ParamikoProvider:
    """Provider over a paramiko SSHClient or Transport."""

    __slots__ = ("_settings",)

    def __init__(self, settings: Settings = DEFAULT_SETTINGS) -> None:
        self._settings = settings

    @rethrow(
        (paramiko.SSHException, OSError),
        into=lambda e: ConnectionError(f"error opening channel: {e}"),
    )
    def open_channel(self, handle: Any, command: str, env: Mapping[str, str] | None = None) -> ChannelPump:
        transport = _transport_of(handle)
        if transport is None or not transport.is_active():
            raise ConnectionError("SSH transport not available")

        channel = transport.open_session()
        logger.debug(f"ParamikoProvider: channel {channel.get_id()} exec: {command[:80]}")
        try:
            if env:
                channel.update_environment(dict(env))
            channel.exec_command(command)
        except BaseException:
            channel.close()
            raise
        return ChannelPump(channel, self._settings.queue_size, self._settings.read_size)

    @rethrow((paramiko.SSHException, OSError), into=lambda e: StreamError(f"write failed: {e}"))
    def send(self, channel: ChannelPump, data: bytes) -> None:
        channel.channel.sendall(data)

    @rethrow((paramiko.SSHException, OSError), into=lambda e: StreamError(f"eof failed: {e}"))
    def send_eof(self, channel: ChannelPump) -> None:
        channel.channel.shutdown_write()

    def receive(self, channel: ChannelPump, timeout: float | None) -> RawEvent | None:
        return channel.get(timeout)

    def close(self, channel: ChannelPump) -> None:
        logger.debug(f"ParamikoProvider: closing channel {channel.channel.get_id()}")
        channel.stop()
