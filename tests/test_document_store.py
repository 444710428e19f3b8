"""Tests for the application write path."""

import pytest

from localsync.store import Operation, SyncState, open_store


class TestPut:
    def test_create_writes_record_and_entry(self, store):
        record = store.put("n1", "A")

        assert record.version == 1
        assert store.get("n1").payload == "A"

        (entry,) = store.log.entries()
        assert entry.record_id == "n1"
        assert entry.operation is Operation.CREATE
        assert entry.base_version == 0
        assert entry.sync_state is SyncState.PENDING
        assert entry.payload_snapshot.payload == "A"

    def test_update_bumps_version(self, store):
        store.put("n1", "A")
        record = store.put("n1", "B")

        assert record.version == 2
        (entry,) = store.log.entries()
        assert entry.operation is Operation.CREATE
        assert entry.payload_snapshot.payload == "B"

    def test_empty_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.put("", "A")

    def test_listener_called_after_write(self, store):
        seen = []
        store.on_write(seen.append)

        store.put("n1", "A")
        store.delete("n1")

        assert seen == ["n1", "n1"]


class TestDelete:
    def test_delete_unsynced_create_removes_everything(self, store):
        store.put("n1", "A")

        store.delete("n1")

        assert store.get("n1") is None
        assert store.table.get("n1") is None
        assert store.log.is_empty()

    def test_delete_synced_record_writes_tombstone(self, store):
        store.put("n1", "A")
        (entry,) = store.log.peek_batch(10)
        store.log.mark_synced(entry.sequence_no)

        tombstone = store.delete("n1")

        assert tombstone.deleted is True
        assert store.get("n1") is None
        assert store.table.get("n1").deleted is True
        (delete_entry,) = store.log.entries()
        assert delete_entry.operation is Operation.DELETE
        assert delete_entry.base_version == 1

    def test_delete_missing(self, store):
        assert store.delete("nope") is None

    def test_scan_hides_tombstones(self, store):
        store.put("a", 1)
        store.put("b", 2)
        for entry in store.log.peek_batch(10):
            store.log.mark_synced(entry.sequence_no)
        store.delete("b")

        assert [r.id for r in store.scan()] == ["a"]


def test_open_store_recovers_in_flight(tmp_path):
    path = str(tmp_path / "store.db")
    store = open_store(path)
    store.put("n1", "A")
    store.log.peek_batch(10)
    store.table.db.close()

    reopened = open_store(path)

    (entry,) = reopened.log.entries()
    assert entry.sync_state is SyncState.PENDING
    assert reopened.get("n1").payload == "A"
    reopened.table.db.close()
