"""Change-tracked record model shared by the local store and the adapters."""

from .records import (
    RECORD_TYPES,
    SETTINGS_ID,
    Category,
    CategoryGroup,
    Ledger,
    Settings,
    SyncedRecord,
    Transaction,
    new_id,
    now_ms,
    record_from_dict,
    remote_wins,
)

__all__ = [
    "RECORD_TYPES",
    "SETTINGS_ID",
    "Category",
    "CategoryGroup",
    "Ledger",
    "Settings",
    "SyncedRecord",
    "Transaction",
    "new_id",
    "now_ms",
    "record_from_dict",
    "remote_wins",
]
