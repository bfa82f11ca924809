"""Local SQLite store: the single write target for user edits and merges."""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..models import RECORD_TYPES, SyncedRecord, record_from_dict, remote_wins

logger = logging.getLogger(__name__)

SCHEMA = """
-- Every synchronizable record, keyed by kind and id. Rows are never removed:
-- deletion is a tombstone so it can propagate to peers.
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    scope_id TEXT NOT NULL DEFAULT '',
    updated_at INTEGER NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    dirty INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    PRIMARY KEY (kind, id)
);

CREATE INDEX IF NOT EXISTS idx_records_scope ON records(kind, scope_id);
CREATE INDEX IF NOT EXISTS idx_records_dirty ON records(dirty);

-- Cursor and other small bits of sync state
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- User-visible history of sync attempts
CREATE TABLE IF NOT EXISTS sync_log (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    direction TEXT NOT NULL,
    outcome TEXT NOT NULL,
    message TEXT NOT NULL,
    file TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_timestamp ON sync_log(timestamp);
"""


@dataclass
class MergeResult:
    """Outcome of merging a batch of remote records into the store."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.updated

    def __add__(self, other: "MergeResult") -> "MergeResult":
        return MergeResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
        )


@dataclass
class SyncLogEntry:
    """A single entry in the user-visible sync log."""

    direction: str  # "sync", "pull", "push", "upload", "download"
    outcome: str  # "success", "failure", "retry"
    message: str
    file: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction,
            "outcome": self.outcome,
            "message": self.message,
            "file": self.file,
        }


class LocalStore:
    """SQLite-backed record store.

    User mutations go through :meth:`save` / :meth:`delete`; remote data goes
    through :meth:`merge_remote`. Both paths write rows via ``_write`` under the
    same lock, so neither can overwrite the other without the last-write-wins
    comparison.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Record Operations ====================

    def _write(self, conn: sqlite3.Connection, record: SyncedRecord, dirty: bool) -> None:
        conn.execute(
            """
            INSERT INTO records (kind, id, scope_id, updated_at, is_deleted, dirty, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(kind, id) DO UPDATE SET
                scope_id = excluded.scope_id,
                updated_at = excluded.updated_at,
                is_deleted = excluded.is_deleted,
                dirty = excluded.dirty,
                data = excluded.data
            """,
            (
                record.kind,
                record.id,
                record.scope_id,
                record.updated_at,
                1 if record.is_deleted else 0,
                1 if dirty else 0,
                json.dumps(record.to_dict(), ensure_ascii=False),
            ),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SyncedRecord:
        return record_from_dict(row["kind"], json.loads(row["data"]))

    def save(self, record: SyncedRecord, now: int | None = None) -> SyncedRecord:
        """Persist a local mutation.

        Bumps ``updated_at`` and marks the record as changed since the last
        push. Always succeeds regardless of network state.

        Args:
            record: The mutated record.
            now: Optional timestamp override in milliseconds.

        Returns:
            The saved record.
        """
        record.touch(now)
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                self._write(conn, record, dirty=True)
        logger.debug(f"Saved {record.kind} {record.id} at {record.updated_at}")
        return record

    def delete(self, kind: str, record_id: str, now: int | None = None) -> SyncedRecord | None:
        """Tombstone a record. The row itself is kept forever.

        Returns:
            The tombstoned record, or None if it does not exist.
        """
        with self._lock:
            record = self.get(kind, record_id)
            if record is None:
                return None
            record.tombstone(now)
            conn = self._ensure_connected()
            with conn:
                self._write(conn, record, dirty=True)
        logger.debug(f"Tombstoned {kind} {record_id}")
        return record

    def get(self, kind: str, record_id: str) -> SyncedRecord | None:
        """Get a record by kind and id, tombstones included."""
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT kind, data FROM records WHERE kind = ? AND id = ?",
                (kind, record_id),
            ).fetchone()
        return self._from_row(row) if row else None

    def all(
        self,
        kind: str,
        include_deleted: bool = True,
        scope_id: str | None = None,
    ) -> list[SyncedRecord]:
        """List records of one kind, ordered by id.

        Args:
            kind: Record kind ("ledger", "category", "group", "transaction", "settings").
            include_deleted: Whether tombstones are returned.
            scope_id: Optional scope filter.

        Returns:
            List of records.
        """
        query = "SELECT kind, data FROM records WHERE kind = ?"
        params: list[Any] = [kind]
        if not include_deleted:
            query += " AND is_deleted = 0"
        if scope_id is not None:
            query += " AND scope_id = ?"
            params.append(scope_id)
        query += " ORDER BY id"
        with self._lock:
            rows = self._ensure_connected().execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def scopes(self) -> set[str]:
        """Ids of every ledger known locally, tombstones included."""
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute("SELECT id FROM records WHERE kind = 'ledger'").fetchall()
        return {row["id"] for row in rows}

    def merge_remote(self, records: Iterable[SyncedRecord]) -> MergeResult:
        """Merge remote records with last-write-wins.

        A record absent locally is inserted as received (tombstone flag
        included). An existing record is replaced only when the remote
        ``updated_at`` is strictly greater; ties keep the local copy.

        Args:
            records: Remote records of any kind.

        Returns:
            MergeResult with insert/update counts.
        """
        result = MergeResult()
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                for remote in records:
                    row = conn.execute(
                        "SELECT kind, data FROM records WHERE kind = ? AND id = ?",
                        (remote.kind, remote.id),
                    ).fetchone()
                    if row is None:
                        self._write(conn, remote, dirty=False)
                        result.inserted += 1
                    elif remote_wins(self._from_row(row), remote):
                        self._write(conn, remote, dirty=False)
                        result.updated += 1
                    else:
                        result.unchanged += 1

        if result.changed:
            logger.info(
                f"Merged remote records: {result.inserted} inserted, "
                f"{result.updated} updated, {result.unchanged} unchanged"
            )
        return result

    def dirty_records(self, kind: str | None = None) -> list[SyncedRecord]:
        """Records mutated locally since they were last pushed."""
        with self._lock:
            conn = self._ensure_connected()
            if kind is None:
                rows = conn.execute(
                    "SELECT kind, data FROM records WHERE dirty = 1 ORDER BY kind, id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT kind, data FROM records WHERE dirty = 1 AND kind = ? ORDER BY id",
                    (kind,),
                ).fetchall()
        return [self._from_row(row) for row in rows]

    def has_dirty(self) -> bool:
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute("SELECT 1 FROM records WHERE dirty = 1 LIMIT 1").fetchone()
        return row is not None

    def mark_clean(self, records: Iterable[SyncedRecord]) -> int:
        """Clear the dirty flag for pushed records.

        A row edited again after the push snapshot keeps its flag, since its
        ``updated_at`` no longer matches.

        Returns:
            Number of rows cleared.
        """
        count = 0
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                for record in records:
                    cursor = conn.execute(
                        """
                        UPDATE records SET dirty = 0
                        WHERE kind = ? AND id = ? AND updated_at = ?
                        """,
                        (record.kind, record.id, record.updated_at),
                    )
                    count += cursor.rowcount
        return count

    # ==================== Sync Metadata ====================

    def get_meta(self, key: str, default: str | None = None) -> str | None:
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                conn.execute(
                    """
                    INSERT INTO sync_meta (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, value),
                )

    def get_cursor(self, account: str = "default") -> int:
        """Get the sync cursor for an account (0 if never synced)."""
        return int(self.get_meta(f"cursor:{account}", "0"))

    def set_cursor(self, value: int, account: str = "default") -> None:
        """Advance the sync cursor. Never moves backwards."""
        if value < self.get_cursor(account):
            logger.warning(f"Refusing to move cursor backwards to {value}")
            return
        self.set_meta(f"cursor:{account}", str(value))

    # ==================== Sync Log ====================

    def log_sync(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append an entry to the user-visible sync log."""
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                conn.execute(
                    """
                    INSERT INTO sync_log (id, timestamp, direction, outcome, message, file)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.timestamp.isoformat(),
                        entry.direction,
                        entry.outcome,
                        entry.message,
                        entry.file,
                    ),
                )
        return entry

    def get_sync_log(self, limit: int = 50) -> list[SyncLogEntry]:
        """Get the most recent sync log entries, newest first."""
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                """
                SELECT id, timestamp, direction, outcome, message, file
                FROM sync_log
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            SyncLogEntry(
                id=row["id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                direction=row["direction"],
                outcome=row["outcome"],
                message=row["message"],
                file=row["file"],
            )
            for row in rows
        ]

    # ==================== Maintenance ====================

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with record counts per kind and pending changes.
        """
        stats: dict[str, Any] = {"records": {}, "tombstones": {}}
        for kind in RECORD_TYPES:
            stats["records"][kind] = 0
            stats["tombstones"][kind] = 0

        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                "SELECT kind, is_deleted, COUNT(*) AS n FROM records GROUP BY kind, is_deleted"
            ).fetchall()
            stats["dirty"] = conn.execute(
                "SELECT COUNT(*) FROM records WHERE dirty = 1"
            ).fetchone()[0]
            stats["sync_log_entries"] = conn.execute(
                "SELECT COUNT(*) FROM sync_log"
            ).fetchone()[0]

        for row in rows:
            bucket = "tombstones" if row["is_deleted"] else "records"
            stats[bucket][row["kind"]] = row["n"]

        if str(self.db_path) != ":memory:" and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
