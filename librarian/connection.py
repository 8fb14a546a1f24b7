"""SSH connections and the labeled connection registry."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import paramiko
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from librarian.config import DEFAULT_SETTINGS, Settings
from librarian.exceptions import ConnectionError
from librarian.provider import ParamikoProvider, Provider


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration.

    Attributes:
        host: Host name or address.
        user: Login user. None lets paramiko use the local user.
        port: SSH port.
        key_path: Private key file. None falls back to the agent and default keys.
        password: Password or key passphrase.
        connect_timeout: TCP connect timeout in seconds.
        accept_unknown_hosts: Add unknown host keys instead of rejecting them.
        auth_retry_timeout: Keep retrying authentication failures for this
            many seconds (0 disables retries).
    """

    host: str
    user: str | None = None
    port: int = 22
    key_path: str | None = None
    password: str | None = field(default=None, repr=False)
    connect_timeout: float = 30.0
    accept_unknown_hosts: bool = False
    auth_retry_timeout: float = 0.0


@dataclass(slots=True)
class Connection:
    """An authenticated transport session and the provider that opens channels on it.

    The handle is opaque to the stream engine; only the provider looks inside.
    """

    handle: Any
    provider: Provider
    label: str | None = None
    settings: Settings = DEFAULT_SETTINGS

    def close(self) -> None:
        close = getattr(self.handle, "close", None)
        if close is not None:
            close()

    def is_alive(self) -> bool:
        get_transport = getattr(self.handle, "get_transport", None)
        if get_transport is None:
            return True
        transport = get_transport()
        return transport is not None and transport.is_active()

    def __enter__(self) -> Connection:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _open_client(config: SSHConfig) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.load_system_host_keys()
    if config.accept_unknown_hosts:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kwargs: dict[str, Any] = {
        "hostname": config.host,
        "port": config.port,
        "timeout": config.connect_timeout,
    }
    if config.user:
        kwargs["username"] = config.user
    if config.key_path:
        kwargs["key_filename"] = config.key_path
    if config.password:
        kwargs["password"] = config.password
    try:
        client.connect(**kwargs)
    except BaseException:
        client.close()
        raise
    return client


def connect(
    config: SSHConfig,
    *,
    label: str | None = None,
    settings: Settings = DEFAULT_SETTINGS,
) -> Connection:
    """Open an authenticated connection.

    Authentication failures are retried with exponential backoff for
    ``config.auth_retry_timeout`` seconds (a freshly injected key may not be
    accepted yet). Everything else fails immediately.

    Raises:
        ConnectionError: If the connection cannot be established.
    """
    logger.debug(f"SSH: connecting to {config.host}:{config.port} ({config.user})")

    open_client = _open_client
    if config.auth_retry_timeout > 0:
        open_client = retry(
            stop=stop_after_delay(config.auth_retry_timeout),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(paramiko.AuthenticationException),
            reraise=True,
        )(_open_client)

    try:
        client = open_client(config)
    except (paramiko.SSHException, OSError) as e:
        raise ConnectionError(f"error connecting to {config.host}: {e}") from e

    logger.debug(f"SSH: connected to {config.host}")
    return Connection(handle=client, provider=ParamikoProvider(settings), label=label, settings=settings)


class ConnectionRegistry:
    """Connections keyed by label, owned by whoever holds the registry.

    Example:
        with ConnectionRegistry() as registry:
            conn = registry.connect("build", SSHConfig(host="build.local"))
            run_checked(conn, "make")
        # every registered connection is closed here

        with registry.session("db", config) as conn:
            ...
        # "db" is closed and unregistered here
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def register(self, label: str, conn: Connection) -> Connection:
        with self._lock:
            if label in self._connections:
                raise ValueError(f"Connection label '{label}' already registered")
            conn.label = label
            self._connections[label] = conn
        return conn

    def connect(
        self,
        label: str,
        config: SSHConfig,
        *,
        settings: Settings = DEFAULT_SETTINGS,
    ) -> Connection:
        return self.register(label, connect(config, label=label, settings=settings))

    def get(self, label: str) -> Connection:
        with self._lock:
            try:
                return self._connections[label]
            except KeyError:
                raise KeyError(f"ssh connection with label {label} not found") from None

    def close(self, label: str) -> None:
        with self._lock:
            conn = self._connections.pop(label, None)
        if conn is None:
            raise KeyError(f"ssh connection with label {label} not found")
        logger.debug(f"ConnectionRegistry: closing {label}")
        conn.close()

    def close_all(self) -> None:
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
        for conn in conns:
            conn.close()

    @contextmanager
    def session(
        self,
        label: str,
        config: SSHConfig,
        *,
        settings: Settings = DEFAULT_SETTINGS,
    ) -> Iterator[Connection]:
        """Connect under ``label`` and close it when the block exits."""
        conn = self.connect(label, config, settings=settings)
        try:
            yield conn
        finally:
            with self._lock:
                self._connections.pop(label, None)
            conn.close()

    def __contains__(self, label: object) -> bool:
        return label in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __enter__(self) -> ConnectionRegistry:
        return self

    def __exit__(self, *_: object) -> None:
        self.close_all()
