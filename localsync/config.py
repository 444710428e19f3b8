"""Configuration loading for localsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = "localsync-node"


@dataclass
class StoreConfig:
    """Configuration for the local SQLite store."""

    db_path: str = "~/.localsync/store.db"


@dataclass
class RemoteConfig:
    """Configuration for the remote HTTP gateway."""

    base_url: str = ""
    timeout_seconds: float = 30.0
    token: str | None = None


@dataclass
class SyncConfig:
    """Configuration for the sync coordinator."""

    enabled: bool = True
    batch_size: int = 50
    push_timeout_seconds: float = 10.0
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    backoff_jitter: float = 0.2
    sync_on_write: bool = True
    pull_on_start: bool = True


@dataclass
class ConnectivityConfig:
    """Configuration for reachability tracking."""

    settle_window_seconds: float = 2.0
    probe_url: str = ""  # Defaults to <remote.base_url>/health
    probe_interval_seconds: float = 15.0
    probe_timeout_seconds: float = 5.0

    def resolve_probe_url(self, remote: RemoteConfig) -> str:
        if self.probe_url:
            return self.probe_url
        if remote.base_url:
            return f"{remote.base_url.rstrip('/')}/health"
        return ""


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LOCALSYNC_ prefix."""
    return os.environ.get(f"LOCALSYNC_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("NODE_NAME"):
        config.node.name = name

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if token := _get_env("REMOTE_TOKEN"):
        config.remote.token = token

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _parse_bool(sync_enabled)
    if batch_size := _get_env("SYNC_BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)
    if push_timeout := _get_env("SYNC_PUSH_TIMEOUT"):
        config.sync.push_timeout_seconds = float(push_timeout)
    if sync_on_write := _get_env("SYNC_ON_WRITE"):
        config.sync.sync_on_write = _parse_bool(sync_on_write)

    # Connectivity overrides
    if settle := _get_env("SETTLE_WINDOW"):
        config.connectivity.settle_window_seconds = float(settle)
    if probe_url := _get_env("PROBE_URL"):
        config.connectivity.probe_url = probe_url

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    name=data["node"].get("name", config.node.name)
                )

            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    token=remote_data.get("token"),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    push_timeout_seconds=sync_data.get(
                        "push_timeout_seconds", config.sync.push_timeout_seconds
                    ),
                    backoff_initial_seconds=sync_data.get(
                        "backoff_initial_seconds", config.sync.backoff_initial_seconds
                    ),
                    backoff_max_seconds=sync_data.get(
                        "backoff_max_seconds", config.sync.backoff_max_seconds
                    ),
                    backoff_jitter=sync_data.get(
                        "backoff_jitter", config.sync.backoff_jitter
                    ),
                    sync_on_write=sync_data.get(
                        "sync_on_write", config.sync.sync_on_write
                    ),
                    pull_on_start=sync_data.get(
                        "pull_on_start", config.sync.pull_on_start
                    ),
                )

            if "connectivity" in data:
                conn_data = data["connectivity"]
                config.connectivity = ConnectivityConfig(
                    settle_window_seconds=conn_data.get(
                        "settle_window_seconds",
                        config.connectivity.settle_window_seconds,
                    ),
                    probe_url=conn_data.get("probe_url", config.connectivity.probe_url),
                    probe_interval_seconds=conn_data.get(
                        "probe_interval_seconds",
                        config.connectivity.probe_interval_seconds,
                    ),
                    probe_timeout_seconds=conn_data.get(
                        "probe_timeout_seconds",
                        config.connectivity.probe_timeout_seconds,
                    ),
                )

    return _apply_env_overrides(config)
