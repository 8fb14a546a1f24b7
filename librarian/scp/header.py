"""SCP control lines and remote command construction.

A file is announced with ``C<mode> <size> <name>\\n``: mode is four octal
digits, size the exact number of payload bytes that follow, name the bare
file name without any directory part.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from pathlib import PurePosixPath

from librarian.exceptions import ConfigurationError, ProtocolError

DEFAULT_PERMISSIONS = 0o644

OK = b"\x00"
WARNING = 0x01
FATAL = 0x02

_CONTROL_LINE = re.compile(rb"C([0-7]{4}) ([0-9]+) ([^/\n]+)\n?")
_TIME_LINE = re.compile(rb"T[0-9]+ [0-9]+ [0-9]+ [0-9]+\n?")


@dataclass(frozen=True, slots=True)
class ControlLine:
    mode: int
    size: int
    name: str

    def __post_init__(self) -> None:
        if not 0 <= self.mode <= 0o7777:
            raise ConfigurationError(f"permissions must be within 0o0..0o7777, got {oct(self.mode)}")
        if self.size < 0:
            raise ConfigurationError(f"size must not be negative, got {self.size}")
        if not self.name or "/" in self.name or "\n" in self.name:
            raise ConfigurationError(f"invalid SCP file name {self.name!r}")

    def encode(self) -> bytes:
        return f"C{self.mode:04o} {self.size} {self.name}\n".encode("utf-8", "surrogateescape")

    @classmethod
    def parse(cls, line: bytes) -> ControlLine:
        match = _CONTROL_LINE.fullmatch(line)
        if match is None:
            raise ProtocolError(f"malformed SCP header {line!r}")
        mode, size, name = match.groups()
        return cls(int(mode, 8), int(size), name.decode("utf-8", "surrogateescape"))


def is_time_line(line: bytes) -> bool:
    """``T<mtime> 0 <atime> 0`` lines precede C lines when the remote preserves times."""
    return _TIME_LINE.fullmatch(line) is not None


def remote_basename(path: str) -> str:
    name = PurePosixPath(path).name
    if not name or path.endswith("/") or name in (".", ".."):
        raise ConfigurationError(f"remote path {path!r} does not name a file")
    return name


def quote_remote_path(path: str) -> str:
    """Shell-quote ``path``, leaving a leading ``~/`` for the remote shell to expand."""
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def sink_command(path: str) -> str:
    """Remote command that receives one file (``scp -t``)."""
    return f"scp -t {quote_remote_path(path)}"


def source_command(path: str) -> str:
    """Remote command that sends one file (``scp -f``)."""
    return f"scp -f {quote_remote_path(path)}"
