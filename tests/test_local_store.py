"""Tests for the local record store."""

import threading

from ledgersync.models import Category, Ledger, Transaction
from ledgersync.store import LocalStore, SyncLogEntry


class TestLocalStoreSchema:
    """Tests for store initialization."""

    def test_connect_creates_tables(self, store):
        """Test that connect() creates all tables."""
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = {t[0] for t in tables}

        assert {"records", "sync_meta", "sync_log"} <= table_names

    def test_file_database_persists(self, tmp_path):
        """Test records survive reopening the database."""
        db = tmp_path / "nested" / "ledger.db"
        s = LocalStore(db)
        s.connect()
        s.save(Ledger(id="s1", name="Home"))
        s.close()

        reopened = LocalStore(db)
        reopened.connect()
        assert reopened.get("ledger", "s1").name == "Home"
        reopened.close()


class TestMutations:
    """Tests for the user mutation path."""

    def test_save_bumps_and_marks_dirty(self, store):
        """Test save stamps updated_at and flags the row for push."""
        tx = store.save(Transaction(id="t1", ledger_id="s1", amount=5), now=1000)

        assert tx.updated_at == 1000
        assert [r.id for r in store.dirty_records()] == ["t1"]
        assert store.has_dirty()

    def test_delete_keeps_tombstone(self, store):
        """Test delete flags the row instead of removing it."""
        store.save(Ledger(id="s1", name="Home"), now=1000)
        store.delete("ledger", "s1", now=2000)

        ledger = store.get("ledger", "s1")
        assert ledger.is_deleted is True
        assert ledger.updated_at == 2000
        assert store.all("ledger", include_deleted=False) == []
        assert len(store.all("ledger")) == 1

    def test_delete_missing_returns_none(self, store):
        assert store.delete("ledger", "nope") is None

    def test_all_filters_by_scope(self, store):
        store.save(Category(id="c1", ledger_id="s1"))
        store.save(Category(id="c2", ledger_id="s2"))

        assert [c.id for c in store.all("category", scope_id="s2")] == ["c2"]

    def test_scopes_include_tombstoned_ledgers(self, store):
        store.save(Ledger(id="s1"))
        store.save(Ledger(id="s2"))
        store.delete("ledger", "s2")

        assert store.scopes() == {"s1", "s2"}


class TestMergeRemote:
    """Tests for last-write-wins merging."""

    def test_absent_record_inserted_with_tombstone_flag(self, store):
        """Test a remote tombstone for an unknown record is kept as a tombstone."""
        result = store.merge_remote(
            [Transaction(id="t1", ledger_id="s1", updated_at=5, is_deleted=True)]
        )

        assert result.inserted == 1
        assert store.get("transaction", "t1").is_deleted is True
        assert not store.has_dirty()

    def test_newer_remote_replaces_whole_record(self, store):
        """Test the remote copy replaces every field, not a field merge."""
        store.save(Transaction(id="t1", ledger_id="s1", amount=1, note="local"), now=100)
        store.merge_remote(
            [Transaction(id="t1", ledger_id="s1", amount=2, note="", updated_at=200)]
        )

        tx = store.get("transaction", "t1")
        assert tx.amount == 2
        assert tx.note == ""
        assert not store.has_dirty()

    def test_older_remote_ignored(self, store):
        store.save(Transaction(id="t1", ledger_id="s1", amount=1), now=300)
        result = store.merge_remote([Transaction(id="t1", ledger_id="s1", amount=2, updated_at=200)])

        assert result.unchanged == 1
        assert store.get("transaction", "t1").amount == 1
        assert store.has_dirty()

    def test_tie_keeps_local(self, store):
        store.save(Transaction(id="t1", ledger_id="s1", amount=1), now=300)
        store.merge_remote([Transaction(id="t1", ledger_id="s1", amount=2, updated_at=300)])

        assert store.get("transaction", "t1").amount == 1

    def test_merge_is_idempotent(self, store):
        records = [Ledger(id="s1", name="Home", updated_at=10)]
        store.merge_remote(records)
        second = store.merge_remote(records)

        assert second.changed == 0


class TestMarkClean:
    """Tests for clearing dirty flags after a push."""

    def test_mark_clean_clears_pushed_rows(self, store):
        store.save(Ledger(id="s1"), now=10)
        store.mark_clean(store.dirty_records())
        assert not store.has_dirty()

    def test_edit_after_snapshot_stays_dirty(self, store):
        """Test a row edited after the push snapshot keeps its flag."""
        store.save(Ledger(id="s1", name="a"), now=10)
        snapshot = store.dirty_records()
        store.save(Ledger(id="s1", name="b", updated_at=10), now=20)

        assert store.mark_clean(snapshot) == 0
        assert store.has_dirty()


class TestMetadata:
    """Tests for cursors and the sync log."""

    def test_cursor_defaults_to_zero(self, store):
        assert store.get_cursor("alice") == 0

    def test_cursor_never_moves_backwards(self, store):
        store.set_cursor(5, "alice")
        store.set_cursor(3, "alice")
        assert store.get_cursor("alice") == 5

    def test_cursors_are_per_account(self, store):
        store.set_cursor(5, "alice")
        assert store.get_cursor("bob") == 0

    def test_sync_log_newest_first(self, store):
        """Test log entries come back newest first."""
        store.log_sync(SyncLogEntry("pull", "failure", "bad file", file="x.csv"))
        store.log_sync(SyncLogEntry("sync", "success", "done"))

        entries = store.get_sync_log(limit=10)

        assert [e.message for e in entries] == ["done", "bad file"]
        assert entries[1].file == "x.csv"
        assert entries[0].to_dict()["outcome"] == "success"

    def test_stats(self, store):
        store.save(Ledger(id="s1"))
        store.save(Transaction(id="t1", ledger_id="s1"))
        store.delete("transaction", "t1")

        stats = store.get_stats()

        assert stats["records"]["ledger"] == 1
        assert stats["tombstones"]["transaction"] == 1
        assert stats["dirty"] == 2


class TestThreadSafety:
    """Tests for a UI thread writing while sync reads and merges."""

    def test_reads_while_another_thread_writes(self, tmp_path):
        """Test readers see consistent lists while saves and merges run on other threads."""
        s = LocalStore(tmp_path / "ledger.db")
        s.connect()
        errors = []

        def writer():
            try:
                for i in range(200):
                    s.save(Transaction(id=f"u{i}", ledger_id="s1", amount=i))
            except Exception as e:
                errors.append(e)

        def merger():
            try:
                for i in range(200):
                    s.merge_remote(
                        [Transaction(id=f"r{i}", ledger_id="s1", amount=i, updated_at=i + 1)]
                    )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer), threading.Thread(target=merger)]
        for t in threads:
            t.start()
        while any(t.is_alive() for t in threads):
            for record in s.all("transaction"):
                assert record.ledger_id == "s1"
            s.dirty_records()
            s.get("transaction", "u0")
        for t in threads:
            t.join()

        assert errors == []
        assert len(s.all("transaction")) == 400
        assert len(s.dirty_records()) == 200
        s.close()
