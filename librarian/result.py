"""Structured results for the non-raising API tier."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from librarian.exceptions import LibrarianError

type RunStatus = Literal["ok", "error"]

type RunPayload = bytes | list[Any] | tuple[bytes, bytes]


@dataclass(frozen=True, slots=True)
class Ok[T]:
    """Successful outcome."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    """Failed outcome.

    ``partial`` holds whatever was received before the failure; ``error`` is
    the exception type the raising API tier uses for this failure.
    """

    reason: str
    partial: Any = None
    error: type[LibrarianError] = LibrarianError

    @property
    def ok(self) -> bool:
        return False


type Result[T] = Ok[T] | Err


@dataclass(frozen=True, slots=True)
class RunResult:
    """Outcome of running a command.

    Attributes:
        status: ``"ok"`` when the channel completed, ``"error"`` on failure.
        payload: Output shaped per the ``as_`` option.
        exit_code: Remote exit status (0..255) when status is ok. On error,
            the status recorded so far, if any.
        reason: Failure reason when status is error.
    """

    status: RunStatus
    payload: RunPayload
    exit_code: int | None
    reason: str | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.status == "ok"
