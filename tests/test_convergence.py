"""Multi-device convergence tests on both backends."""

import httpx
import pytest

from ledgersync.config import ServerConfig
from ledgersync.models import RECORD_TYPES, Category, Ledger, Transaction, now_ms
from ledgersync.server import ServerStore, create_app
from ledgersync.sync.file_adapter import FileSyncAdapter
from ledgersync.sync.orchestrator import SyncOrchestrator, SyncStatus
from ledgersync.sync.shard import decode_shard, encode_shard
from ledgersync.sync.structured_adapter import StructuredClient, StructuredSyncAdapter

TOKEN = "test-token"
D1 = 1709251200000  # 2024-03-01
D2 = 1709337600000  # 2024-03-02
D_2023 = 1677628800000


def tx(tx_id: str, amount: float, tx_type: str, date: int, ledger_id: str = "s1") -> Transaction:
    return Transaction(
        id=tx_id, ledger_id=ledger_id, amount=amount, type=tx_type, date=date, created_at=date
    )


def snapshot(store) -> dict[str, list[dict]]:
    """Every record of every kind, as wire dictionaries."""
    return {
        kind: sorted((r.to_dict() for r in store.all(kind)), key=lambda d: d["id"])
        for kind in RECORD_TYPES
    }


@pytest.fixture(params=["webdav", "cloud"])
def device(request, dav):
    """Factory building an orchestrator for a device store on the chosen backend."""
    server_store = ServerStore(":memory:")
    server_store.connect()
    app = create_app(ServerConfig(token=TOKEN), store=server_store)

    def make(store) -> SyncOrchestrator:
        if request.param == "webdav":
            adapter = FileSyncAdapter(store, dav.client())
        else:
            http = httpx.AsyncClient(
                transport=httpx.ASGITransport(app=app), base_url="http://backend/"
            )
            adapter = StructuredSyncAdapter(
                store, StructuredClient("http://backend", TOKEN, client=http)
            )
        return SyncOrchestrator(store, adapter, retry_delay_min=0, retry_delay_max=0)

    yield make
    server_store.close()


async def sync(*devices: SyncOrchestrator) -> None:
    for d in devices:
        result = await d.request_sync()
        assert result.status is SyncStatus.SUCCESS, result.error


class TestConcreteScenarios:
    """The two worked examples of offline editing."""

    @pytest.mark.asyncio
    async def test_offline_adds_on_two_devices(self, device, store, other_store):
        """Test A then B then A leaves exactly two transactions on both devices."""
        a, b = device(store), device(other_store)
        store.save(tx("ta", 50, "expense", D1))
        other_store.save(tx("tb", 20, "income", D2))

        await sync(a, b, a)

        for s in (store, other_store):
            rows = s.all("transaction")
            assert sorted((t.amount, t.type) for t in rows) == [(20, "income"), (50, "expense")]
        assert snapshot(store) == snapshot(other_store)

    @pytest.mark.asyncio
    async def test_shard_changed_between_pull_and_push(self, dav, store):
        """Test one precondition failure is retried without losing either write."""
        orchestrator = SyncOrchestrator(
            store,
            FileSyncAdapter(store, dav.client()),
            retry_delay_min=0,
            retry_delay_max=0,
        )
        store.save(tx("t1", 10, "expense", D1))
        await sync(orchestrator)
        store.save(tx("t2", 11, "expense", D2))

        def other_client_writes(name):
            assert name == "ledger_s1_2024.csv"
            rows = decode_shard(dav.read(name))
            rows.append(tx("t3", 12, "income", D2))
            dav.write(name, encode_shard(rows))

        dav.before_put = other_client_writes
        result = await orchestrator.request_sync()

        assert result.status is SyncStatus.SUCCESS
        assert result.attempts == 2
        remote_ids = sorted(t.id for t in decode_shard(dav.read("ledger_s1_2024.csv")))
        assert remote_ids == ["t1", "t2", "t3"]
        assert store.get("transaction", "t3").amount == 12
        assert not store.has_dirty()


class TestConvergence:
    """Properties that hold on every backend."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", ["a", "b"])
    async def test_disjoint_edits_converge(self, device, store, other_store, first):
        """Test disjoint offline edits converge whichever device syncs first."""
        a, b = device(store), device(other_store)
        store.save(Ledger(id="s1", name="Home"))
        store.save(Category(id="c1", name="Food", ledger_id="s1"))
        store.save(tx("ta", 5, "expense", D1))
        other_store.save(Ledger(id="s2", name="Trip"))
        other_store.save(tx("tb", 7, "income", D_2023, ledger_id="s2"))

        order = (a, b) if first == "a" else (b, a)
        await sync(order[0], order[1], order[0])

        assert snapshot(store) == snapshot(other_store)
        assert len(store.all("transaction")) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", ["a", "b"])
    async def test_last_write_wins_whole_record(self, device, store, other_store, first):
        """Test the later edit wins as a whole record, not a field merge."""
        a, b = device(store), device(other_store)
        store.save(tx("x", 1, "expense", D1))
        await sync(a, b)

        t1 = now_ms() + 10_000
        edit_a = store.get("transaction", "x")
        edit_a.amount = 2
        edit_a.note = "from a"
        store.save(edit_a, now=t1)

        edit_b = other_store.get("transaction", "x")
        edit_b.category_id = "c9"
        other_store.save(edit_b, now=t1 + 1000)
        expected = other_store.get("transaction", "x").to_dict()

        order = (a, b) if first == "a" else (b, a)
        await sync(order[0], order[1], order[0])

        for s in (store, other_store):
            final = s.get("transaction", "x").to_dict()
            assert final == expected
            assert final["note"] == ""
            assert final["amount"] == 1

    @pytest.mark.asyncio
    async def test_tombstone_propagates(self, device, store, other_store):
        """Test a deletion reaches a device that never deleted the record."""
        a, b = device(store), device(other_store)
        store.save(Ledger(id="s1", name="Home"))
        store.save(tx("x", 1, "expense", D1))
        await sync(a, b)

        store.delete("transaction", "x")
        await sync(a, b, a)

        assert other_store.get("transaction", "x").is_deleted is True
        assert store.get("transaction", "x").is_deleted is True
        assert other_store.all("transaction", include_deleted=False) == []

    @pytest.mark.asyncio
    async def test_sync_without_changes_is_quiet(self, device, store):
        """Test a repeated sync with nothing new pushes nothing."""
        a = device(store)
        store.save(Ledger(id="s1", name="Home"))
        store.save(tx("x", 1, "expense", D1))
        await sync(a)

        result = await a.request_sync()

        assert result.pushed == 0
        assert result.merged == 0
