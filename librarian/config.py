"""TOML-based host and stream configuration.

Loads ~/.librarian/defaults.toml (global, or $LIBRARIAN_CONFIG) and
librarian.toml (project), layers them, and resolves named hosts into
SSHConfig instances and the ``[defaults]`` table into Settings.

Example librarian.toml:

    [defaults]
    data_timeout = 30.0
    scp_timeout = 5.0

    [hosts.build]
    host = "build.example.com"
    user = "ci"
    key_path = "~/.ssh/id_ed25519"
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from librarian.exceptions import ConfigurationError

if TYPE_CHECKING:
    from librarian.connection import SSHConfig

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".librarian" / "defaults.toml"
PROJECT_CONFIG_NAME = "librarian.toml"
CONFIG_ENV_VAR = "LIBRARIAN_CONFIG"
SECTIONS = frozenset({"defaults", "hosts"})


@dataclass(frozen=True, slots=True)
class Settings:
    """Engine-wide defaults.

    Attributes:
        data_timeout: Idle timeout per pull for command streams, in seconds.
            None waits forever.
        scp_timeout: Idle timeout per pull for SCP transfers, in seconds.
        queue_size: Maximum events buffered per channel before the reader
            threads stop draining the transport.
        read_size: Maximum bytes requested from the transport per read.
        chunk_size: Size of the chunks read from local files sent over SCP.
    """

    data_timeout: float | None = None
    scp_timeout: float = 5.0
    queue_size: int = 64
    read_size: int = 32768
    chunk_size: int = 65536

    def __post_init__(self) -> None:
        if self.data_timeout is not None and self.data_timeout <= 0:
            raise ConfigurationError(f"data_timeout must be positive, got {self.data_timeout}")
        if self.scp_timeout <= 0:
            raise ConfigurationError(f"scp_timeout must be positive, got {self.scp_timeout}")
        for name in ("queue_size", "read_size", "chunk_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")


DEFAULT_SETTINGS = Settings()


def _merge_layers(global_cfg: RawConfig, project_cfg: RawConfig) -> RawConfig:
    """Overlay the project file on the global one.

    ``[defaults]`` merges key by key. A ``[hosts.<label>]`` table in the
    project replaces the global table of the same label as a whole; a
    host's fields always come from a single file.
    """
    defaults = {**global_cfg.get("defaults", {}), **project_cfg.get("defaults", {})}
    hosts = {**global_cfg.get("hosts", {}), **project_cfg.get("hosts", {})}
    return {"defaults": defaults, "hosts": hosts}


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    if unknown := sorted(set(raw) - SECTIONS):
        raise ConfigurationError(f"Unknown sections in {path}: {', '.join(unknown)}")
    for section in SECTIONS & raw.keys():
        if not isinstance(raw[section], dict):
            raise ConfigurationError(f"[{section}] in {path} must be a table")
    for label, table in raw.get("hosts", {}).items():
        if not isinstance(table, dict):
            raise ConfigurationError(f"hosts.{label} in {path} must be a table")
    return raw


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Read and merge both configuration layers.

    The global file is ``global_path``, else ``$LIBRARIAN_CONFIG``, else
    ``~/.librarian/defaults.toml``. Missing files count as empty.
    """
    if global_path is None:
        global_path = Path(env) if (env := os.environ.get(CONFIG_ENV_VAR)) else GLOBAL_CONFIG_PATH
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    return _merge_layers(_read_toml(global_path), _read_toml(project_path))


def _check_keys(section: str, raw: RawConfig, cls: type) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{section}]: {', '.join(unknown)}. "
            f"Valid: {', '.join(sorted(known))}"
        )


def resolve_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    config = load_config(project_dir=project_dir, global_path=global_path)
    raw = dict(config["defaults"])
    _check_keys("defaults", raw, Settings)

    # TOML has no null; 0 means wait forever
    if raw.get("data_timeout") == 0:
        raw["data_timeout"] = None
    try:
        return Settings(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [defaults]: {e}") from e


def resolve_host(
    label: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> SSHConfig:
    from librarian.connection import SSHConfig

    config = load_config(project_dir=project_dir, global_path=global_path)

    hosts = config["hosts"]
    if label not in hosts:
        raise KeyError(f"Host '{label}' not found. Available: {', '.join(hosts) or 'none'}")

    raw_host = dict(hosts[label])
    if "host" not in raw_host:
        raise ConfigurationError(f"Host '{label}' missing 'host' field")
    _check_keys(f"hosts.{label}", raw_host, SSHConfig)

    if key_path := raw_host.get("key_path"):
        raw_host["key_path"] = str(Path(key_path).expanduser())

    return SSHConfig(**raw_host)
