"""Configuration loading for ledgersync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DeviceConfig:
    name: str = "ledgersync-device"
    currency: str = "¥"
    # Labels for the readable Type column of transaction shards
    type_labels: dict[str, str] = field(
        default_factory=lambda: {"expense": "Expense", "income": "Income"}
    )


@dataclass
class StoreConfig:
    db_path: str = "~/.ledgersync/ledger.db"


@dataclass
class SyncConfig:
    """Configuration for the sync orchestrator."""

    enabled: bool = True
    backend: str = "webdav"  # "webdav" or "cloud"
    debounce_seconds: float = 5.0
    poll_interval_seconds: float = 300.0
    max_conflict_retries: int = 3
    retry_delay_min: float = 0.5
    retry_delay_max: float = 1.5


@dataclass
class WebDAVConfig:
    url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 20.0
    max_retries: int = 5


@dataclass
class CloudConfig:
    """Configuration for the structured backend."""

    endpoint: str = ""
    token: str = ""
    user_id: str = "default"
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class AttachmentsConfig:
    enabled: bool = True
    db_path: str = "~/.ledgersync/attachments.db"
    cache_limit_mb: int = 200

    @property
    def cache_limit_bytes(self) -> int:
        return self.cache_limit_mb * 1024 * 1024


@dataclass
class ServerConfig:
    """Configuration for the reference backend (``ledgersync serve``)."""

    host: str = "127.0.0.1"
    port: int = 8787
    token: str = ""
    db_path: str = "~/.ledgersync/server.db"
    max_attachment_bytes: int = 10 * 1024 * 1024


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    webdav: WebDAVConfig = field(default_factory=WebDAVConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    attachments: AttachmentsConfig = field(default_factory=AttachmentsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LEDGERSYNC_ prefix."""
    return os.environ.get(f"LEDGERSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Device overrides
    if name := _get_env("DEVICE_NAME"):
        config.device.name = name

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if backend := _get_env("SYNC_BACKEND"):
        config.sync.backend = backend
    if debounce := _get_env("SYNC_DEBOUNCE"):
        config.sync.debounce_seconds = float(debounce)
    if poll := _get_env("SYNC_POLL_INTERVAL"):
        config.sync.poll_interval_seconds = float(poll)

    # WebDAV overrides; credentials usually come from here rather than the file
    if url := _get_env("WEBDAV_URL"):
        config.webdav.url = url
    if username := _get_env("WEBDAV_USERNAME"):
        config.webdav.username = username
    if password := _get_env("WEBDAV_PASSWORD"):
        config.webdav.password = password

    # Cloud overrides
    if endpoint := _get_env("CLOUD_ENDPOINT"):
        config.cloud.endpoint = endpoint
    if token := _get_env("CLOUD_TOKEN"):
        config.cloud.token = token
    if user_id := _get_env("CLOUD_USER_ID"):
        config.cloud.user_id = user_id

    # Attachment overrides
    if attachments_enabled := _get_env("ATTACHMENTS_ENABLED"):
        config.attachments.enabled = _is_true(attachments_enabled)
    if cache_limit := _get_env("ATTACHMENTS_CACHE_LIMIT_MB"):
        config.attachments.cache_limit_mb = int(cache_limit)

    # Server overrides
    if server_token := _get_env("SERVER_TOKEN"):
        config.server.token = server_token
    if server_port := _get_env("SERVER_PORT"):
        config.server.port = int(server_port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.

    Raises:
        ValueError: If the sync backend is unknown.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            # Parse device config
            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    name=device_data.get("name", config.device.name),
                    currency=device_data.get("currency", config.device.currency),
                    type_labels={
                        **config.device.type_labels,
                        **(device_data.get("type_labels") or {}),
                    },
                )

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    backend=sync_data.get("backend", config.sync.backend),
                    debounce_seconds=sync_data.get(
                        "debounce_seconds", config.sync.debounce_seconds
                    ),
                    poll_interval_seconds=sync_data.get(
                        "poll_interval_seconds", config.sync.poll_interval_seconds
                    ),
                    max_conflict_retries=sync_data.get(
                        "max_conflict_retries", config.sync.max_conflict_retries
                    ),
                    retry_delay_min=sync_data.get(
                        "retry_delay_min", config.sync.retry_delay_min
                    ),
                    retry_delay_max=sync_data.get(
                        "retry_delay_max", config.sync.retry_delay_max
                    ),
                )

            # Parse WebDAV config
            if "webdav" in data:
                webdav_data = data["webdav"]
                config.webdav = WebDAVConfig(
                    url=webdav_data.get("url", config.webdav.url),
                    username=webdav_data.get("username", config.webdav.username),
                    password=webdav_data.get("password", config.webdav.password),
                    timeout_seconds=webdav_data.get(
                        "timeout_seconds", config.webdav.timeout_seconds
                    ),
                    max_retries=webdav_data.get("max_retries", config.webdav.max_retries),
                )

            # Parse cloud config
            if "cloud" in data:
                cloud_data = data["cloud"]
                config.cloud = CloudConfig(
                    endpoint=cloud_data.get("endpoint", config.cloud.endpoint),
                    token=cloud_data.get("token", config.cloud.token),
                    user_id=cloud_data.get("user_id", config.cloud.user_id),
                    timeout_seconds=cloud_data.get(
                        "timeout_seconds", config.cloud.timeout_seconds
                    ),
                    max_retries=cloud_data.get("max_retries", config.cloud.max_retries),
                )

            # Parse attachments config
            if "attachments" in data:
                att_data = data["attachments"]
                config.attachments = AttachmentsConfig(
                    enabled=att_data.get("enabled", config.attachments.enabled),
                    db_path=att_data.get("db_path", config.attachments.db_path),
                    cache_limit_mb=att_data.get(
                        "cache_limit_mb", config.attachments.cache_limit_mb
                    ),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    token=server_data.get("token", config.server.token),
                    db_path=server_data.get("db_path", config.server.db_path),
                    max_attachment_bytes=server_data.get(
                        "max_attachment_bytes", config.server.max_attachment_bytes
                    ),
                )

    config = _apply_env_overrides(config)

    if config.sync.backend not in ("webdav", "cloud"):
        raise ValueError(f"Unknown sync backend: {config.sync.backend!r}")

    return config
