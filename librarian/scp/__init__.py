"""Single-file SCP over channel streams."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from librarian.exceptions import SCPError
from librarian.modules.base import Failed
from librarian.result import Err, Ok, Result
from librarian.scp.fetch import FetchState, ScpFetch
from librarian.scp.header import ControlLine, remote_basename, sink_command, source_command
from librarian.scp.send import ScpSend, SendState
from librarian.scp.source import Payload, payload_from

if TYPE_CHECKING:
    from librarian.channel import ChannelStream


def transfer(stream: ChannelStream) -> Result[Any]:
    """Drive an SCP stream to completion and reduce it to a result.

    The channel is closed when this returns, whatever the outcome.
    """
    with stream:
        while not stream.finished and not stream.closed:
            stream.pull()

    outcome = stream.outcome
    if isinstance(outcome, Failed):
        failure = stream.module.failure
        return Err(outcome.reason, error=type(failure) if failure is not None else SCPError)
    try:
        return Ok(stream.result())
    except SCPError as e:
        return Err(str(e), error=type(e))


__all__ = [
    "ControlLine",
    "FetchState",
    "Payload",
    "ScpFetch",
    "ScpSend",
    "SendState",
    "payload_from",
    "remote_basename",
    "sink_command",
    "source_command",
    "transfer",
]
