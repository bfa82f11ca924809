"""SQLite storage for the reference structured backend."""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from ..models import RECORD_TYPES, record_from_dict

logger = logging.getLogger(__name__)

SCHEMA = """
-- One row per record per account. ``version`` is the account version of
-- the push that last wrote the row; pulls filter on it.
CREATE TABLE IF NOT EXISTS records (
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    id TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (user_id, kind, id)
);

CREATE INDEX IF NOT EXISTS idx_records_version ON records(user_id, version);

CREATE TABLE IF NOT EXISTS versions (
    user_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS attachments (
    key TEXT PRIMARY KEY,
    content_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    data BLOB NOT NULL,
    created_at INTEGER NOT NULL
);
"""

# Push/pull payload key -> record kind
COLLECTIONS = {
    "ledgers": "ledger",
    "categories": "category",
    "groups": "group",
    "transactions": "transaction",
}


class ServerStore:
    """Account-partitioned record and attachment storage."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"ServerStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Records ====================

    def version(self, user_id: str) -> int:
        """Current version counter of an account (0 before the first push)."""
        conn = self._ensure_connected()
        row = conn.execute("SELECT version FROM versions WHERE user_id = ?", (user_id,)).fetchone()
        return row["version"] if row else 0

    @staticmethod
    def _normalize(payload: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
        """Validate a push payload into ``(kind, wire dict)`` pairs.

        Raises:
            ValueError: If any record is malformed.
        """
        rows: list[tuple[str, dict[str, Any]]] = []
        for key, kind in COLLECTIONS.items():
            items = payload.get(key) or []
            if not isinstance(items, list):
                raise ValueError(f"{key} must be a list")
            for item in items:
                if not isinstance(item, dict) or not item.get("id"):
                    raise ValueError(f"{key} entries need an id")
                try:
                    rows.append((kind, record_from_dict(kind, item).to_dict()))
                except (KeyError, TypeError, ValueError) as e:
                    raise ValueError(f"Bad {kind} {item.get('id')}: {e}") from e

        settings = payload.get("settings")
        if settings:
            if not isinstance(settings, dict):
                raise ValueError("settings must be an object")
            rows.append(("settings", record_from_dict("settings", settings).to_dict()))
        return rows

    def push(self, user_id: str, payload: dict[str, Any]) -> tuple[int, int]:
        """Apply a push with a conditional upsert per record.

        A stored row is overwritten only when the incoming ``updatedAt`` is
        greater than or equal to the stored one, so replaying a push is
        harmless. A non-empty push bumps the account version by one.

        Returns:
            ``(version, rows written)``.

        Raises:
            ValueError: If the payload is malformed.
        """
        rows = self._normalize(payload)

        with self._lock:
            conn = self._ensure_connected()
            if not rows:
                return self.version(user_id), 0

            with conn:
                version = self.version(user_id) + 1
                written = 0
                for kind, data in rows:
                    cursor = conn.execute(
                        """
                        INSERT INTO records (user_id, kind, id, updated_at, is_deleted, version, data)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, kind, id) DO UPDATE SET
                            updated_at = excluded.updated_at,
                            is_deleted = excluded.is_deleted,
                            version = excluded.version,
                            data = excluded.data
                        WHERE excluded.updated_at >= records.updated_at
                        """,
                        (
                            user_id,
                            kind,
                            data["id"],
                            data["updatedAt"],
                            1 if data["isDeleted"] else 0,
                            version,
                            json.dumps(data, ensure_ascii=False),
                        ),
                    )
                    written += cursor.rowcount
                conn.execute(
                    """
                    INSERT INTO versions (user_id, version) VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET version = excluded.version
                    """,
                    (user_id, version),
                )

        logger.info(f"Push for {user_id}: {written}/{len(rows)} rows applied, version {version}")
        return version, written

    def pull(self, user_id: str, since: int = 0) -> dict[str, Any]:
        """Rows written after version ``since``, plus every group and the settings.

        Read under the write lock so the rows match the reported version.
        """
        with self._lock:
            conn = self._ensure_connected()
            result: dict[str, Any] = {"version": self.version(user_id)}

            for key, kind in COLLECTIONS.items():
                if kind == "group":
                    rows = conn.execute(
                        "SELECT data FROM records WHERE user_id = ? AND kind = ? ORDER BY id",
                        (user_id, kind),
                    )
                else:
                    rows = conn.execute(
                        """
                        SELECT data FROM records
                        WHERE user_id = ? AND kind = ? AND version > ?
                        ORDER BY version, id
                        """,
                        (user_id, kind, since),
                    )
                result[key] = [json.loads(row["data"]) for row in rows]

            row = conn.execute(
                "SELECT data FROM records WHERE user_id = ? AND kind = 'settings'", (user_id,)
            ).fetchone()
            result["settings"] = json.loads(row["data"]) if row else None
        return result

    # ==================== Attachments ====================

    def put_attachment(self, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                conn.execute(
                    """
                    INSERT INTO attachments (key, content_type, size_bytes, data, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        content_type = excluded.content_type,
                        size_bytes = excluded.size_bytes,
                        data = excluded.data
                    """,
                    (key, content_type, len(data), data, int(time.time() * 1000)),
                )

    def get_attachment(self, key: str) -> tuple[bytes, str] | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT data, content_type FROM attachments WHERE key = ?", (key,)
        ).fetchone()
        return (bytes(row["data"]), row["content_type"]) if row else None

    def delete_attachment(self, key: str) -> bool:
        with self._lock:
            conn = self._ensure_connected()
            with conn:
                cursor = conn.execute("DELETE FROM attachments WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def get_stats(self) -> dict[str, Any]:
        """Row counts per kind and attachment totals."""
        conn = self._ensure_connected()
        stats: dict[str, Any] = {"records": {kind: 0 for kind in RECORD_TYPES}}
        for row in conn.execute("SELECT kind, COUNT(*) AS n FROM records GROUP BY kind"):
            stats["records"][row["kind"]] = row["n"]
        count, size = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(size_bytes), 0) FROM attachments"
        ).fetchone()
        stats["attachments"] = count
        stats["attachment_bytes"] = size
        return stats
