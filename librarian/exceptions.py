"""Custom exception hierarchy for librarian.

All librarian-specific exceptions inherit from LibrarianError, enabling
users to catch all librarian exceptions with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class LibrarianError(Exception):
    """Base exception for all librarian errors."""


class ConfigurationError(LibrarianError):
    """Raised for invalid stream options or configuration values."""


class ConnectionError(LibrarianError):  # noqa: A001
    """Raised when a connection or channel cannot be opened."""


class StreamError(LibrarianError):
    """Raised when a channel fails mid-stream.

    Output received before the failure is kept in ``partial``.
    """

    def __init__(self, reason: str, partial: Sequence[Any] = ()) -> None:
        self.reason = reason
        self.partial = tuple(partial)
        super().__init__(f"ssh errored with {reason}")


class RunError(LibrarianError):
    """Raised when a remote command exits non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"command {command} errored with retcode {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class SCPError(LibrarianError):
    """Raised when an SCP transfer fails."""


class ProtocolError(SCPError):
    """Raised when the remote side violates the SCP handshake."""
