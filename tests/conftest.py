"""Scripted provider and in-memory SCP peers for in-process tests."""

from __future__ import annotations

import shlex
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from librarian.config import Settings
from librarian.connection import Connection
from librarian.exceptions import ConnectionError, StreamError

type RawEvent = tuple[Any, ...]
type Script = list[RawEvent] | Callable[[str], list[RawEvent]]


def split(data: bytes, size: int | None) -> list[bytes]:
    if not size or not data:
        return [data] if data else []
    return [data[i : i + size] for i in range(0, len(data), size)]


@dataclass
class FakeChannel:
    command: str
    env: dict[str, str] | None = None
    events: deque[RawEvent] = field(default_factory=deque)
    sent: list[bytes] = field(default_factory=list)
    eof_sent: bool = False
    close_count: int = 0
    peer: Any = None

    @property
    def stdin(self) -> bytes:
        return b"".join(self.sent)

    def push_data(self, payload: bytes, fragment: int | None = None, code: int = 0) -> None:
        for piece in split(payload, fragment):
            self.events.append(("data", code, piece))

    def finish(self, exit_code: int) -> None:
        self.events.extend([("eof",), ("exit_status", exit_code), ("closed",)])


@dataclass
class RemoteFile:
    mode: int
    data: bytes


class ScpSinkPeer:
    """Plays ``scp -t <path>``: acks the header, collects the payload, stores it on eof."""

    def __init__(self, channel: FakeChannel, files: dict[str, RemoteFile], path: str, refuse: str | None) -> None:
        self.channel = channel
        self.files = files
        self.path = path
        self.refuse = refuse
        self.buffer = bytearray()
        self.header: tuple[int, int, str] | None = None
        self.complete = False

    def on_send(self, data: bytes) -> None:
        self.buffer += data
        if self.header is None:
            newline = self.buffer.find(b"\n")
            if newline < 0:
                return
            line = bytes(self.buffer[:newline]).decode()
            del self.buffer[: newline + 1]
            if self.refuse is not None:
                self.channel.push_data(b"\x01" + self.refuse.encode() + b"\n")
                self.channel.finish(1)
                return
            mode, size, name = line[1:].split(" ", 2)
            self.header = (int(mode, 8), int(size), name)
            self.channel.push_data(b"\x00")
        _, size, _ = self.header
        if not self.complete and len(self.buffer) >= size + 1:
            self.complete = True
            self.channel.push_data(b"\x00")

    def on_eof(self) -> None:
        if self.header is None or not self.complete:
            self.channel.push_data(b"scp: protocol error: unexpected eof\n", code=1)
            self.channel.finish(1)
            return
        mode, size, _ = self.header
        self.files[self.path] = RemoteFile(mode, bytes(self.buffer[:size]))
        self.channel.finish(0)


class ScpSourcePeer:
    """Plays ``scp -f <path>``: header on the first ack, payload on the second."""

    def __init__(
        self,
        channel: FakeChannel,
        files: dict[str, RemoteFile],
        path: str,
        fragment: int | None,
        glued: bool,
    ) -> None:
        self.channel = channel
        self.files = files
        self.path = path
        self.fragment = fragment
        self.glued = glued
        self.acks = 0

    def on_send(self, data: bytes) -> None:
        for _ in data:
            self.acks += 1
            self._on_ack()

    def _on_ack(self) -> None:
        remote = self.files.get(self.path)
        if remote is None:
            if self.acks == 1:
                self.channel.push_data(f"\x01scp: {self.path}: No such file or directory\n".encode())
                self.channel.finish(1)
            return
        name = self.path.rsplit("/", 1)[-1]
        header = f"C{remote.mode:04o} {len(remote.data)} {name}\n".encode()
        body = remote.data + b"\x00"
        match self.acks:
            case 1 if self.glued:
                self.channel.push_data(header + body, self.fragment)
            case 1:
                self.channel.push_data(header, self.fragment)
            case 2 if not self.glued:
                self.channel.push_data(body, self.fragment)
            case 3:
                self.channel.finish(0)

    def on_eof(self) -> None:
        pass


class FakeProvider:
    """Provider double.

    Every channel replays ``script`` (a list of raw events, or a function
    of the command returning one) when one is given. Without a script,
    ``scp -t``/``scp -f`` commands talk to an in-memory remote whose files
    live in ``files``. An exhausted feed reports a timeout.
    """

    def __init__(
        self,
        script: Script | None = None,
        *,
        files: dict[str, RemoteFile] | None = None,
        fragment: int | None = None,
        glued: bool = False,
        refuse: str | None = None,
        fail_open: str | None = None,
        fail_send: str | None = None,
    ) -> None:
        self.script = script
        self.files = files if files is not None else {}
        self.fragment = fragment
        self.glued = glued
        self.refuse = refuse
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.channels: list[FakeChannel] = []
        self.timeouts: list[float | None] = []

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    def open_channel(self, handle: Any, command: str, env: Mapping[str, str] | None = None) -> FakeChannel:
        if self.fail_open is not None:
            raise ConnectionError(self.fail_open)
        channel = FakeChannel(command, dict(env) if env is not None else None)
        argv = shlex.split(command) if self.script is None else []
        match argv:
            case ["scp", "-t", path]:
                channel.peer = ScpSinkPeer(channel, self.files, path, self.refuse)
            case ["scp", "-f", path]:
                channel.peer = ScpSourcePeer(channel, self.files, path, self.fragment, self.glued)
            case _:
                script = self.script(command) if callable(self.script) else self.script
                channel.events.extend(script or [])
        self.channels.append(channel)
        return channel

    def send(self, channel: FakeChannel, data: bytes) -> None:
        if self.fail_send is not None:
            raise StreamError(self.fail_send)
        channel.sent.append(data)
        if channel.peer is not None:
            channel.peer.on_send(data)

    def send_eof(self, channel: FakeChannel) -> None:
        channel.eof_sent = True
        if channel.peer is not None:
            channel.peer.on_eof()

    def receive(self, channel: FakeChannel, timeout: float | None) -> RawEvent | None:
        self.timeouts.append(timeout)
        if channel.events:
            return channel.events.popleft()
        return None

    def close(self, channel: FakeChannel) -> None:
        channel.close_count += 1


def output(*chunks: bytes, stderr: tuple[bytes, ...] = (), exit_code: int = 0) -> list[RawEvent]:
    """Raw events for a command that prints ``chunks`` and exits."""
    events: list[RawEvent] = [("data", 0, c) for c in chunks]
    events += [("data", 1, c) for c in stderr]
    events += [("eof",), ("exit_status", exit_code), ("closed",)]
    return events


@pytest.fixture
def settings() -> Settings:
    return Settings(data_timeout=None, scp_timeout=1.0)


@pytest.fixture
def make_conn(settings: Settings) -> Callable[..., Connection]:
    def make(provider: FakeProvider | None = None, **kwargs: Any) -> Connection:
        return Connection(handle=object(), provider=provider or FakeProvider(**kwargs), settings=settings)

    return make
