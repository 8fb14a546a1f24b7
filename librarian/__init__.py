"""Librarian - Remote command streams and SCP over SSH.

Example:

    import librarian
    from librarian import SSHConfig

    with librarian.connect(SSHConfig("build.example.com", user="ci")) as conn:
        for chunk in librarian.stream_checked(conn, "tail -n 100 /var/log/syslog"):
            print(chunk.decode(), end="")

        out = librarian.run_checked(conn, "make test", dir="~/project")

        librarian.send_checked(conn, Path("dist/app.tar.gz"), "/srv/app.tar.gz", permissions=0o600)
        notes = librarian.fetch_checked(conn, "/etc/motd")
"""

# Caller API
from librarian.api import (
    fetch,
    fetch_checked,
    run,
    run_checked,
    send,
    send_checked,
    stream,
    stream_checked,
)

# Configuration
from librarian.config import Settings, load_config, resolve_host, resolve_settings

# Connections
from librarian.connection import Connection, ConnectionRegistry, SSHConfig, connect

# Events (ADT)
from librarian.events import (
    Closed,
    Data,
    Eof,
    ExitStatus,
    ProviderError,
    StreamEvent,
    StreamItem,
    Timeout,
)

# Exceptions
from librarian.exceptions import (
    ConfigurationError,
    ConnectionError,
    LibrarianError,
    ProtocolError,
    RunError,
    SCPError,
    StreamError,
)

# Logging
from librarian.logging import LogConfig, disable_logging, enable_logging, logging_enabled

# Protocol modules
from librarian.modules import Done, Emit, Failed, Passthrough, ProtocolModule, Step

# Redirect policies
from librarian.redirect import File, Raw, Silent, ToStderr, ToStdout, ToStream, Transform

# Results
from librarian.result import Err, Ok, Result, RunResult

# SCP
from librarian.scp import ControlLine, ScpFetch, ScpSend

# Engine
from librarian.channel import ChannelStream, Module

__all__ = [
    # API
    "fetch",
    "fetch_checked",
    "run",
    "run_checked",
    "send",
    "send_checked",
    "stream",
    "stream_checked",
    # Configuration
    "Settings",
    "load_config",
    "resolve_host",
    "resolve_settings",
    # Connections
    "Connection",
    "ConnectionRegistry",
    "SSHConfig",
    "connect",
    # Events
    "Closed",
    "Data",
    "Eof",
    "ExitStatus",
    "ProviderError",
    "StreamEvent",
    "StreamItem",
    "Timeout",
    # Exceptions
    "ConfigurationError",
    "ConnectionError",
    "LibrarianError",
    "ProtocolError",
    "RunError",
    "SCPError",
    "StreamError",
    # Logging
    "LogConfig",
    "disable_logging",
    "enable_logging",
    "logging_enabled",
    # Modules
    "Done",
    "Emit",
    "Failed",
    "Passthrough",
    "ProtocolModule",
    "Step",
    # Redirects
    "File",
    "Raw",
    "Silent",
    "ToStderr",
    "ToStdout",
    "ToStream",
    "Transform",
    # Results
    "Err",
    "Ok",
    "Result",
    "RunResult",
    # SCP
    "ControlLine",
    "ScpFetch",
    "ScpSend",
    # Engine
    "ChannelStream",
    "Module",
]
