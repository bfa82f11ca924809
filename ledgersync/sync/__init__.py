"""Sync engine: remote adapters and the orchestrator that drives them."""

from ..config import Config
from ..store import LocalStore
from .base import PullResult, PushResult, SyncAdapter
from .file_adapter import FileSyncAdapter
from .orchestrator import SyncOrchestrator, SyncResult, SyncState, SyncStatus
from .structured_adapter import StructuredClient, StructuredSyncAdapter
from .webdav import WebDAVClient


def create_adapter(config: Config, store: LocalStore) -> SyncAdapter:
    """Build the adapter for the configured backend.

    Raises:
        ValueError: If the selected backend is not configured.
    """
    if config.sync.backend == "cloud":
        if not config.cloud.endpoint:
            raise ValueError("cloud.endpoint is not configured")
        client = StructuredClient(
            config.cloud.endpoint,
            config.cloud.token,
            user_id=config.cloud.user_id,
            timeout=config.cloud.timeout_seconds,
            max_retries=config.cloud.max_retries,
        )
        return StructuredSyncAdapter(store, client)

    client = WebDAVClient(
        config.webdav.url,
        config.webdav.username,
        config.webdav.password,
        timeout=config.webdav.timeout_seconds,
        max_retries=config.webdav.max_retries,
    )
    return FileSyncAdapter(
        store,
        client,
        type_labels=config.device.type_labels,
        currency=config.device.currency,
    )


__all__ = [
    "FileSyncAdapter",
    "PullResult",
    "PushResult",
    "StructuredClient",
    "StructuredSyncAdapter",
    "SyncAdapter",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "WebDAVClient",
    "create_adapter",
]
