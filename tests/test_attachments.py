"""Tests for the attachment queue, cache and client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ledgersync.attachments import AttachmentClient, AttachmentQueue
from ledgersync.config import ServerConfig
from ledgersync.errors import MalformedRemoteData, RemoteRejected, SyncError
from ledgersync.server import ServerStore, create_app

TOKEN = "test-token"


@pytest.fixture
def server_store():
    s = ServerStore(":memory:")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def client(server_store):
    """An attachment client talking to the reference backend."""
    app = create_app(ServerConfig(token=TOKEN), store=server_store)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://backend/")
    return AttachmentClient("http://backend", TOKEN, client=http)


def failing_client(status: int) -> AttachmentClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(status)),
        base_url="http://backend/",
    )
    return AttachmentClient("http://backend", TOKEN, max_retries=0, client=http)


def make_queue(client=None, limit: int = 1024, store=None) -> AttachmentQueue:
    queue = AttachmentQueue(":memory:", client=client, cache_limit_bytes=limit, log_store=store)
    queue.connect()
    return queue


def cached_ids(queue: AttachmentQueue) -> set[str]:
    rows = queue._ensure_connected().execute("SELECT content_id FROM attachment_cache")
    return {row[0] for row in rows}


class TestEnqueue:
    """Tests for queueing attachments offline."""

    def test_enqueue_caches_and_queues(self):
        queue = make_queue()

        content_id = queue.enqueue(b"receipt", "image/jpeg")

        assert len(content_id) == 32
        assert queue.pending() == [content_id]
        assert cached_ids(queue) == {content_id}
        queue.close()

    def test_empty_blob_rejected(self):
        queue = make_queue()
        with pytest.raises(ValueError):
            queue.enqueue(b"")
        queue.close()

    @pytest.mark.asyncio
    async def test_fetch_pending_works_offline(self):
        """Test a just-queued attachment displays without any remote."""
        queue = make_queue()
        content_id = queue.enqueue(b"receipt")

        assert await queue.fetch(content_id) == b"receipt"
        queue.close()

    def test_survives_restart(self, tmp_path):
        db = tmp_path / "attachments.db"
        queue = AttachmentQueue(db)
        content_id = queue.enqueue(b"receipt")
        queue.close()

        reopened = AttachmentQueue(db)
        assert reopened.pending() == [content_id]
        reopened.close()


class TestDrain:
    """Tests for uploading the queue."""

    @pytest.mark.asyncio
    async def test_drain_uploads_and_clears(self, client, server_store, store):
        queue = make_queue(client, store=store)
        first = queue.enqueue(b"one", "image/png")
        second = queue.enqueue(b"two")

        result = await queue.drain()

        assert result.uploaded == 2
        assert result.remaining == 0
        assert queue.pending() == []
        assert server_store.get_attachment(first) == (b"one", "image/png")
        assert server_store.get_attachment(second)[0] == b"two"
        assert store.get_sync_log()[0].direction == "upload"
        await client.close()

    @pytest.mark.asyncio
    async def test_network_failure_stops_drain(self, store):
        """Test an unreachable remote leaves every entry queued."""
        queue = make_queue(failing_client(503), store=store)
        queue.enqueue(b"one")
        queue.enqueue(b"two")

        result = await queue.drain()

        assert result.failed == 1
        assert result.remaining == 2
        assert store.get_sync_log()[0].outcome == "failure"

    @pytest.mark.asyncio
    async def test_rejected_upload_continues(self):
        queue = make_queue(failing_client(400))
        queue.enqueue(b"one")
        queue.enqueue(b"two")

        result = await queue.drain()

        assert result.failed == 2
        assert result.remaining == 2
        attempts = queue._ensure_connected().execute(
            "SELECT attempts FROM pending_uploads"
        ).fetchall()
        assert [row[0] for row in attempts] == [1, 1]

    @pytest.mark.asyncio
    async def test_concurrent_drains_coalesced(self):
        release = asyncio.Event()

        async def slow_upload(content_id, blob, content_type):
            await release.wait()
            return content_id

        remote = MagicMock()
        remote.upload = AsyncMock(side_effect=slow_upload)
        queue = make_queue(remote)
        queue.enqueue(b"one")

        first = asyncio.create_task(queue.drain())
        await asyncio.sleep(0)
        second = await queue.drain()
        release.set()
        first_result = await first

        assert second.coalesced is True
        assert first_result.uploaded == 1
        remote.upload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_drain_without_client(self):
        queue = make_queue()
        queue.enqueue(b"one")

        result = await queue.drain()

        assert result.remaining == 1


class TestCache:
    """Tests for fetching and eviction."""

    @pytest.mark.asyncio
    async def test_fetch_miss_downloads_and_caches(self, client, server_store):
        server_store.put_attachment("k1", b"remote", "image/png")
        queue = make_queue(client)

        assert await queue.fetch("k1") == b"remote"
        assert "k1" in cached_ids(queue)
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_remote_blob(self, client, store):
        queue = make_queue(client, store=store)

        with pytest.raises(RemoteRejected):
            await queue.fetch("nope")
        assert store.get_sync_log()[0].direction == "download"
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_download_rejected(self):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"")),
            base_url="http://backend/",
        )
        queue = make_queue(AttachmentClient("http://backend", TOKEN, client=http))

        with pytest.raises(MalformedRemoteData):
            await queue.fetch("k1")
        assert cached_ids(queue) == set()

    @pytest.mark.asyncio
    async def test_fetch_without_client(self):
        queue = make_queue()
        with pytest.raises(SyncError):
            await queue.fetch("k1")

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self, client, server_store):
        """Test the oldest access goes first once the budget is exceeded."""
        for key in ("a", "b", "c"):
            server_store.put_attachment(key, b"12345678", "image/png")
        queue = make_queue(client, limit=20)

        await queue.fetch("a")
        await queue.fetch("b")
        await queue.fetch("a")
        await queue.fetch("c")

        assert cached_ids(queue) == {"a", "c"}
        await client.close()

    def test_pending_never_evicted(self):
        """Test entries awaiting upload stay even over budget."""
        queue = make_queue(limit=10)

        first = queue.enqueue(b"12345678")
        second = queue.enqueue(b"12345678")

        assert cached_ids(queue) == {first, second}
        assert queue.get_stats()["cache_bytes"] == 16

    @pytest.mark.asyncio
    async def test_uploaded_entry_becomes_evictable(self, client):
        queue = make_queue(client, limit=10)
        first = queue.enqueue(b"12345678")
        await queue.drain()

        second = queue.enqueue(b"12345678")

        assert cached_ids(queue) == {second}
        assert first not in cached_ids(queue)
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_local_and_remote(self, client, server_store):
        queue = make_queue(client)
        content_id = queue.enqueue(b"one")
        await queue.drain()

        await queue.delete(content_id)

        assert cached_ids(queue) == set()
        assert server_store.get_attachment(content_id) is None
        await client.close()

    def test_clear_cache_keeps_pending(self):
        queue = make_queue()
        content_id = queue.enqueue(b"one")

        assert queue.clear_cache() == 0
        assert cached_ids(queue) == {content_id}

    def test_stats(self):
        queue = make_queue(limit=100)
        queue.enqueue(b"abc")

        stats = queue.get_stats()

        assert stats == {
            "cached_entries": 1,
            "cache_bytes": 3,
            "cache_limit_bytes": 100,
            "pending_uploads": 1,
        }
