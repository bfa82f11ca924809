"""Offline attachment queue with a size-bounded local cache.

Blobs are cached and queued at save time so they display without a network
round trip; ``drain()`` uploads them whenever connectivity allows. The queue
shares no lock with record sync.
"""

import asyncio
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import AuthFailure, MalformedRemoteData, NetworkFailure, SyncError
from ..store import LocalStore, SyncLogEntry
from .client import AttachmentClient

logger = logging.getLogger(__name__)

DEFAULT_CACHE_LIMIT = 200 * 1024 * 1024  # 200 MiB

SCHEMA = """
-- Local copies of attachments, both just-queued and already synced
CREATE TABLE IF NOT EXISTS attachment_cache (
    content_id TEXT PRIMARY KEY,
    blob BLOB NOT NULL,
    content_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    last_access INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_last_access ON attachment_cache(last_access);

-- Attachments not yet confirmed by the remote
CREATE TABLE IF NOT EXISTS pending_uploads (
    content_id TEXT PRIMARY KEY,
    blob BLOB NOT NULL,
    content_type TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
"""


@dataclass
class DrainResult:
    """Outcome of one drain."""

    uploaded: int = 0
    failed: int = 0
    remaining: int = 0
    coalesced: bool = False


class AttachmentQueue:
    """Durable upload queue and LRU cache for binary attachments."""

    def __init__(
        self,
        db_path: str | Path,
        client: AttachmentClient | None = None,
        cache_limit_bytes: int = DEFAULT_CACHE_LIMIT,
        log_store: LocalStore | None = None,
    ):
        """Initialize the queue.

        Args:
            db_path: Path to the SQLite database, or ":memory:".
            client: Remote client; without one the queue only caches.
            cache_limit_bytes: Cache budget enforced after every cache write.
            log_store: Optional store receiving upload/download log entries.
        """
        self.db_path = Path(db_path).expanduser()
        self.client = client
        self.cache_limit_bytes = cache_limit_bytes
        self.log_store = log_store
        self._conn: sqlite3.Connection | None = None
        self._drain_lock = asyncio.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"AttachmentQueue connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _log(self, direction: str, outcome: str, message: str, content_id: str) -> None:
        if self.log_store is not None:
            self.log_store.log_sync(SyncLogEntry(direction, outcome, message, file=content_id))

    @staticmethod
    def _now() -> int:
        return time.time_ns()

    def _cache_put(
        self, conn: sqlite3.Connection, content_id: str, blob: bytes, content_type: str
    ) -> None:
        conn.execute(
            """
            INSERT INTO attachment_cache (content_id, blob, content_type, size_bytes, last_access)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(content_id) DO UPDATE SET
                blob = excluded.blob,
                content_type = excluded.content_type,
                size_bytes = excluded.size_bytes,
                last_access = excluded.last_access
            """,
            (content_id, blob, content_type, len(blob), self._now()),
        )

    # ==================== Queue ====================

    def enqueue(self, blob: bytes, content_type: str = "application/octet-stream") -> str:
        """Cache a new attachment and queue it for upload.

        Works offline; the returned id can be stored in a record right away.

        Args:
            blob: Attachment bytes.
            content_type: MIME type sent with the upload.

        Returns:
            The new content id.
        """
        if not blob:
            raise ValueError("Cannot enqueue an empty attachment")

        content_id = uuid.uuid4().hex
        conn = self._ensure_connected()
        with conn:
            self._cache_put(conn, content_id, blob, content_type)
            conn.execute(
                """
                INSERT INTO pending_uploads (content_id, blob, content_type, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (content_id, blob, content_type, int(time.time() * 1000)),
            )

        logger.debug(f"Queued attachment {content_id} ({len(blob)} bytes)")
        self.evict()
        return content_id

    def pending(self) -> list[str]:
        """Ids of attachments waiting for upload, oldest first."""
        conn = self._ensure_connected()
        rows = conn.execute("SELECT content_id FROM pending_uploads ORDER BY created_at, content_id")
        return [row["content_id"] for row in rows]

    async def drain(self) -> DrainResult:
        """Try to upload every pending attachment.

        A successful upload removes the entry; a failed one stays queued for
        the next drain. Stops early when the remote is unreachable or rejects
        the credentials, since every other upload would fail the same way.
        Concurrent calls are coalesced.
        """
        if self._drain_lock.locked():
            return DrainResult(coalesced=True)

        async with self._drain_lock:
            result = DrainResult()
            if self.client is None:
                result.remaining = len(self.pending())
                return result

            conn = self._ensure_connected()
            rows = conn.execute(
                "SELECT content_id, blob, content_type FROM pending_uploads "
                "ORDER BY created_at, content_id"
            ).fetchall()

            for row in rows:
                content_id = row["content_id"]
                try:
                    await self.client.upload(content_id, row["blob"], row["content_type"])
                except SyncError as e:
                    result.failed += 1
                    with conn:
                        conn.execute(
                            """
                            UPDATE pending_uploads SET attempts = attempts + 1, last_error = ?
                            WHERE content_id = ?
                            """,
                            (str(e), content_id),
                        )
                    logger.warning(f"Upload of {content_id} failed: {e}")
                    self._log("upload", "failure", str(e), content_id)
                    if isinstance(e, (NetworkFailure, AuthFailure)):
                        break
                    continue

                with conn:
                    conn.execute("DELETE FROM pending_uploads WHERE content_id = ?", (content_id,))
                result.uploaded += 1
                self._log("upload", "success", "Attachment uploaded", content_id)

            result.remaining = len(self.pending())

        if result.uploaded or result.failed:
            logger.info(
                f"Attachment drain: {result.uploaded} uploaded, "
                f"{result.failed} failed, {result.remaining} pending"
            )
        return result

    # ==================== Cache ====================

    async def fetch(self, content_id: str) -> bytes:
        """Return an attachment, from cache when possible.

        Raises:
            MalformedRemoteData: If the remote returns an empty payload.
            SyncError: If the download fails or no client is configured.
        """
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT blob FROM attachment_cache WHERE content_id = ?", (content_id,)
        ).fetchone()
        if row and row["blob"]:
            with conn:
                conn.execute(
                    "UPDATE attachment_cache SET last_access = ? WHERE content_id = ?",
                    (self._now(), content_id),
                )
            return bytes(row["blob"])

        if self.client is None:
            raise SyncError(f"Attachment {content_id} is not cached and no remote is configured")

        try:
            blob = await self.client.download(content_id)
            if not blob:
                raise MalformedRemoteData(f"Empty download for {content_id}", file=content_id)
        except SyncError as e:
            self._log("download", "failure", str(e), content_id)
            raise

        with conn:
            self._cache_put(conn, content_id, blob, "application/octet-stream")
        self.evict()
        return blob

    def evict(self) -> int:
        """Evict least recently used entries until the cache fits its budget.

        Entries with a pending upload are never evicted.

        Returns:
            Number of entries evicted.
        """
        conn = self._ensure_connected()
        total = conn.execute(
            "SELECT COALESCE(SUM(size_bytes), 0) FROM attachment_cache"
        ).fetchone()[0]
        if total <= self.cache_limit_bytes:
            return 0

        candidates = conn.execute(
            """
            SELECT content_id, size_bytes FROM attachment_cache
            WHERE content_id NOT IN (SELECT content_id FROM pending_uploads)
            ORDER BY last_access, content_id
            """
        ).fetchall()

        evicted = []
        for row in candidates:
            if total <= self.cache_limit_bytes:
                break
            evicted.append(row["content_id"])
            total -= row["size_bytes"]

        if evicted:
            with conn:
                conn.executemany(
                    "DELETE FROM attachment_cache WHERE content_id = ?",
                    [(content_id,) for content_id in evicted],
                )
            logger.info(f"Evicted {len(evicted)} attachments from cache")
        if total > self.cache_limit_bytes:
            logger.warning("Attachment cache over budget; remaining entries are pending upload")
        return len(evicted)

    async def delete(self, content_id: str) -> None:
        """Remove an attachment locally, then best-effort from the remote."""
        conn = self._ensure_connected()
        with conn:
            conn.execute("DELETE FROM attachment_cache WHERE content_id = ?", (content_id,))
            conn.execute("DELETE FROM pending_uploads WHERE content_id = ?", (content_id,))

        if self.client is None:
            return
        try:
            await self.client.delete(content_id)
        except SyncError as e:
            logger.warning(f"Remote delete of {content_id} failed: {e}")
            self._log("upload", "failure", f"Remote delete failed: {e}", content_id)

    def clear_cache(self) -> int:
        """Drop every cached entry that is not pending upload.

        Returns:
            Number of entries removed.
        """
        conn = self._ensure_connected()
        with conn:
            cursor = conn.execute(
                """
                DELETE FROM attachment_cache
                WHERE content_id NOT IN (SELECT content_id FROM pending_uploads)
                """
            )
        return cursor.rowcount

    def get_stats(self) -> dict[str, Any]:
        """Get cache and queue statistics."""
        conn = self._ensure_connected()
        count, size = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(size_bytes), 0) FROM attachment_cache"
        ).fetchone()
        pending = conn.execute("SELECT COUNT(*) FROM pending_uploads").fetchone()[0]
        return {
            "cached_entries": count,
            "cache_bytes": size,
            "cache_limit_bytes": self.cache_limit_bytes,
            "pending_uploads": pending,
        }
