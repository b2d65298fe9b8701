"""Configuration loading for schoolkv."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ContextConfig:
    name: str = "admin-console"


@dataclass
class CacheConfig:
    """Local cache and outbox storage for one context."""

    db_path: str = "~/.schoolkv/cache.db"
    outbox_db_path: str = "~/.schoolkv/outbox.db"
    quota_bytes: int = 5 * 1024 * 1024  # Same ceiling browsers give localStorage
    outbox_retention_days: int = 7


@dataclass
class RemoteConfig:
    """Remote store client settings."""

    url: str = ""  # Empty means local-only
    timeout_seconds: float = 10.0
    max_retries: int = 3
    flush_interval_seconds: float = 5.0
    batch_size: int = 100


@dataclass
class BroadcastConfig:
    """MQTT change broadcaster settings."""

    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    topic_prefix: str = "schoolkv"
    username: str | None = None
    password: str | None = None
    skip_own_changes: bool = True


@dataclass
class ServerConfig:
    """Remote store service settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    db_path: str = "~/.schoolkv/remote.db"


@dataclass
class Config:
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    extra_sensitive_keys: list[str] = field(default_factory=list)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SCHOOLKV_ prefix."""
    return os.environ.get(f"SCHOOLKV_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("CONTEXT_NAME"):
        config.context.name = name

    # Cache overrides
    if db_path := _get_env("CACHE_DB_PATH"):
        config.cache.db_path = db_path
    if outbox_path := _get_env("OUTBOX_DB_PATH"):
        config.cache.outbox_db_path = outbox_path
    if quota := _get_env("CACHE_QUOTA_BYTES"):
        config.cache.quota_bytes = int(quota)

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(retries)
    if interval := _get_env("FLUSH_INTERVAL"):
        config.remote.flush_interval_seconds = float(interval)

    # Broadcast overrides
    if enabled := _get_env("BROADCAST_ENABLED"):
        config.broadcast.enabled = _as_bool(enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.broadcast.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.broadcast.port = int(port)
    if username := _get_env("MQTT_USERNAME"):
        config.broadcast.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.broadcast.password = password

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db

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

            if "context" in data:
                config.context = ContextConfig(
                    name=data["context"].get("name", config.context.name)
                )

            if "cache" in data:
                cache_data = data["cache"]
                config.cache = CacheConfig(
                    db_path=cache_data.get("db_path", config.cache.db_path),
                    outbox_db_path=cache_data.get(
                        "outbox_db_path", config.cache.outbox_db_path
                    ),
                    quota_bytes=cache_data.get("quota_bytes", config.cache.quota_bytes),
                    outbox_retention_days=cache_data.get(
                        "outbox_retention_days", config.cache.outbox_retention_days
                    ),
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    url=remote_data.get("url", config.remote.url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get("max_retries", config.remote.max_retries),
                    flush_interval_seconds=remote_data.get(
                        "flush_interval_seconds", config.remote.flush_interval_seconds
                    ),
                    batch_size=remote_data.get("batch_size", config.remote.batch_size),
                )

            if "broadcast" in data:
                bc_data = data["broadcast"]
                config.broadcast = BroadcastConfig(
                    enabled=bc_data.get("enabled", config.broadcast.enabled),
                    broker=bc_data.get("broker", config.broadcast.broker),
                    port=bc_data.get("port", config.broadcast.port),
                    topic_prefix=bc_data.get("topic_prefix", config.broadcast.topic_prefix),
                    username=bc_data.get("username"),
                    password=bc_data.get("password"),
                    skip_own_changes=bc_data.get(
                        "skip_own_changes", config.broadcast.skip_own_changes
                    ),
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                )

            config.extra_sensitive_keys = list(data.get("extra_sensitive_keys", []))

    return _apply_env_overrides(config)
