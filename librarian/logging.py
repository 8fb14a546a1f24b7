"""Logging for librarian.

Everything the package logs goes through loguru and stays silent until the
application opts in. Channel lifecycle, SCP state changes and provider
failures are logged under the ``librarian`` name; ``scope`` narrows that to
one subsystem:

    from librarian import LogConfig, enable_logging, disable_logging, logging_enabled

    handlers = enable_logging(LogConfig(level="DEBUG"))
    librarian.run(conn, "uptime")
    disable_logging(handlers)

    # only SCP transfers, to a file, for the duration of the block
    with logging_enabled(LogConfig(console=False, file="scp.log", scope="librarian.scp")):
        librarian.send_checked(conn, Path("build.tar.gz"), "/srv/releases/build.tar.gz")

Records from the channel reader threads carry the thread name
(``librarian-chan<id>-stdout``) so interleaved channels can be told apart.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Literal

from loguru import logger

logger.disable("librarian")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{thread.name}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """What to log and where.

    Attributes:
        level: Minimum level for the console handler.
        file: Log file path. No file handler when None.
        file_level: Minimum level for the file handler.
        console: Log to stderr.
        rotation: File rotation policy, e.g. "50 MB" or "1 day".
        retention: Rotated files to keep.
        scope: Logger name prefix to let through, e.g. "librarian.scp".
    """

    level: LogLevel = "INFO"
    file: str | None = None
    file_level: LogLevel = "DEBUG"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10
    scope: str = "librarian"


def enable_logging(config: LogConfig | None = None) -> list[int]:
    """Turn librarian logging on and return the ids of the added handlers."""
    config = config or LogConfig()
    logger.enable("librarian")
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(sys.stderr, level=config.level, format=CONSOLE_FORMAT, colorize=True, filter=config.scope)
        )

    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level=config.file_level,
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,  # tracebacks may hold passwords and key paths
                enqueue=True,
                filter=config.scope,
            )
        )

    return handler_ids


def disable_logging(handler_ids: list[int]) -> None:
    """Remove ``handler_ids`` and silence librarian again. Clears the list."""
    for hid in handler_ids:
        logger.remove(hid)
    handler_ids.clear()
    logger.disable("librarian")


@contextmanager
def logging_enabled(config: LogConfig | None = None) -> Iterator[list[int]]:
    handler_ids = enable_logging(config)
    try:
        yield handler_ids
    finally:
        disable_logging(handler_ids)
