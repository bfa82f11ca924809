"""Local durable storage for synchronized records and sync history."""

from .local_store import LocalStore, MergeResult, SyncLogEntry

__all__ = ["LocalStore", "MergeResult", "SyncLogEntry"]
