"""
Tests for the SQLite ItemStore.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from recall.errors import StorageError
from recall.item_store import ItemStore, decode_embedding, encode_embedding
from recall.types import MemoryItem, SourceKind

from conftest import DIMENSION


def _item(text="hello world", kind=SourceKind.NOTE, embedding=None, created_at=None, **metadata):
    return MemoryItem.create(text, kind, metadata or None, embedding, created_at=created_at)


class TestAppendAndGet:

    def test_append_then_get(self, item_store):
        item = _item(embedding=[1.0, 0.5, -0.25], topic="greeting")
        assert item_store.append(item) == item.id

        loaded = item_store.get(item.id)
        assert loaded is not None
        assert loaded.text == "hello world"
        assert loaded.source_kind is SourceKind.NOTE
        assert loaded.metadata == {"topic": "greeting"}
        assert loaded.embedding == (1.0, 0.5, -0.25)
        assert loaded.created_at == item.created_at

    def test_get_missing_returns_none(self, item_store):
        assert item_store.get("nope") is None
        assert not item_store.exists("nope")

    def test_duplicate_id_rejected(self, item_store):
        item = _item()
        item_store.append(item)
        with pytest.raises(StorageError, match="already exists"):
            item_store.append(item)
        assert item_store.count() == 1

    def test_item_without_embedding(self, item_store):
        item = _item()
        item_store.append(item)
        assert item_store.get(item.id).embedding is None
        assert item_store.count_with_embeddings() == 0

    def test_get_many_omits_missing(self, item_store):
        a, b = _item("a"), _item("b")
        item_store.append(a)
        item_store.append(b)
        found = item_store.get_many([a.id, "missing", b.id])
        assert set(found) == {a.id, b.id}
        assert item_store.get_many([]) == {}

    def test_unicode_text_roundtrip(self, item_store):
        item = _item("café naïve 日本語")
        item_store.append(item)
        assert item_store.get(item.id).text == "café naïve 日本語"


class TestScan:

    def test_scan_all_in_insertion_order(self, item_store):
        items = [_item(f"item {i}") for i in range(10)]
        for item in items:
            item_store.append(item)

        scanned = list(item_store.scan_all(batch_size=3))
        assert [i.id for i in scanned] == [i.id for i in items]

    def test_scan_all_is_restartable(self, item_store):
        for i in range(5):
            item_store.append(_item(f"item {i}"))

        first = [i.id for i in item_store.scan_all(batch_size=2)]
        second = [i.id for i in item_store.scan_all(batch_size=2)]
        assert first == second
        assert len(first) == 5

    def test_scan_empty_store(self, item_store):
        assert list(item_store.scan_all()) == []


class TestDelete:

    def test_delete_is_idempotent(self, item_store):
        item = _item()
        item_store.append(item)
        assert item_store.delete(item.id) is True
        assert item_store.delete(item.id) is False
        assert item_store.get(item.id) is None

    def test_clear(self, item_store):
        for i in range(4):
            item_store.append(_item(f"item {i}"))
        assert item_store.clear() == 4
        assert item_store.count() == 0


class TestQueries:

    def test_expired_ids_oldest_first(self, item_store):
        now = datetime(2026, 1, 10, tzinfo=timezone.utc)
        old = _item("old", created_at=now - timedelta(days=30))
        older = _item("older", created_at=now - timedelta(days=60))
        fresh = _item("fresh", created_at=now - timedelta(days=1))
        for item in (old, fresh, older):
            item_store.append(item)

        expired = item_store.expired_ids(now - timedelta(days=7))
        assert expired == [older.id, old.id]

    def test_latest_created_at(self, item_store):
        assert item_store.latest_created_at() is None
        t1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        t2 = datetime(2026, 2, 1, tzinfo=timezone.utc)
        item_store.append(_item("a", created_at=t2))
        item_store.append(_item("b", created_at=t1))
        assert item_store.latest_created_at() == t2

    def test_storage_size_grows(self, item_store):
        item_store.append(_item("x" * 10_000))
        assert item_store.storage_size() > 0


class TestCorruption:

    def test_truncated_embedding_blob_reported(self, item_store):
        item = _item(embedding=[1.0, 2.0, 3.0])
        item_store.append(item)

        conn = sqlite3.connect(str(item_store.path))
        conn.execute("UPDATE memory_items SET embedding = ? WHERE id = ?", (b"\x00\x01\x02", item.id))
        conn.commit()
        conn.close()

        with pytest.raises(StorageError, match="Corrupt row"):
            item_store.get(item.id)

    def test_wrong_dimension_blob_reported(self, item_store):
        item = _item(embedding=[1.0, 2.0, 3.0])
        item_store.append(item)

        conn = sqlite3.connect(str(item_store.path))
        conn.execute("UPDATE memory_items SET embedding = ? WHERE id = ?",
                     (encode_embedding([1.0, 2.0]), item.id))
        conn.commit()
        conn.close()

        with pytest.raises(StorageError):
            list(item_store.scan_all())

    def test_unknown_source_kind_reported(self, item_store):
        item = _item()
        item_store.append(item)

        conn = sqlite3.connect(str(item_store.path))
        conn.execute("UPDATE memory_items SET source_kind = 'gossip' WHERE id = ?", (item.id,))
        conn.commit()
        conn.close()

        with pytest.raises(StorageError):
            item_store.get(item.id)

    def test_not_a_database(self, tmp_path):
        path = tmp_path / "items.db"
        path.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(StorageError):
            ItemStore(path)

    def test_float32_overflow_not_stored(self, item_store):
        with pytest.raises(ValueError):
            encode_embedding([1e39, 0.0, 0.0])
        item = MemoryItem(id="huge", text="huge", source_kind=SourceKind.NOTE,
                          created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
                          embedding=(1e39, 0.0, 0.0))
        with pytest.raises(StorageError):
            item_store.append(item)
        assert item_store.count() == 0

    def test_decode_rejects_partial_float(self):
        with pytest.raises(ValueError):
            decode_embedding(b"\x00" * 5)
        assert decode_embedding(encode_embedding([0.5, -1.0])) == (0.5, -1.0)


class TestLifecycle:

    def test_closed_store_raises(self, tmp_path):
        store = ItemStore(tmp_path / "items.db")
        store.close()
        with pytest.raises(StorageError, match="closed"):
            store.append(_item())
        with pytest.raises(StorageError, match="closed"):
            store.get("x")

    def test_reopen_sees_committed_items(self, tmp_path):
        path = tmp_path / "items.db"
        with ItemStore(path, embedding_dimension=DIMENSION) as store:
            item = _item(embedding=[0.0, 1.0, 0.0])
            store.append(item)

        with ItemStore(path, embedding_dimension=DIMENSION) as store:
            assert store.get(item.id).embedding == (0.0, 1.0, 0.0)

    def test_reads_from_other_threads(self, item_store):
        items = [_item(f"item {i}") for i in range(5)]
        for item in items:
            item_store.append(item)

        counts = []
        errors = []

        def reader():
            try:
                counts.append(len(list(item_store.scan_all())))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert counts == [5, 5, 5, 5]
