"""Tests for the DocumentStore: load, atomic flush, snapshots and corruption."""

import json
import threading
from pathlib import Path

import pytest

from musicmark.errors import StorageCorruption, StorageFailure
from musicmark.models import Document
from musicmark.store import DocumentStore, Unchanged


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "nested" / "data" / "db.json"


@pytest.fixture
def store(db_path):
    s = DocumentStore(db_path)
    s.load()
    yield s
    s.close()


def bump_users(doc: Document) -> int:
    return doc.next_user_id()


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------

class TestLoad:
    def test_creates_directory_and_empty_document(self, db_path):
        store = DocumentStore(db_path)
        doc = store.load()
        assert db_path.exists()
        assert doc.users == [] and doc.listens == []
        on_disk = json.loads(db_path.read_text(encoding="utf-8"))
        assert on_disk == {"users": [], "listens": [], "seq": {"users": 0, "listens": 0}}

    def test_reads_existing_file(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text(json.dumps({
            "users": [],
            "listens": [{
                "id": 7, "user_id": 1, "title": "A", "artist": None, "album": None,
                "source": None, "started_at": 1000, "duration_sec": None,
                "external_id": None, "created_at": 1001,
            }],
            "seq": {"users": 1, "listens": 7},
        }), encoding="utf-8")
        doc = DocumentStore(db_path).load()
        assert doc.listens[0].id == 7
        assert doc.seq.listens == 7

    def test_invalid_json_refuses_to_start(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageCorruption):
            DocumentStore(db_path).load()
        # the damaged file is left for inspection, not replaced
        assert db_path.read_text(encoding="utf-8") == "{not json"

    def test_empty_file_is_corruption(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text("", encoding="utf-8")
        with pytest.raises(StorageCorruption):
            DocumentStore(db_path).load()

    def test_wrong_shape_is_corruption(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text(json.dumps({"users": "nope", "listens": [], "seq": {}}), encoding="utf-8")
        with pytest.raises(StorageCorruption):
            DocumentStore(db_path).load()

    def test_top_level_array_is_corruption(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text("[]", encoding="utf-8")
        with pytest.raises(StorageCorruption):
            DocumentStore(db_path).load()

    def test_corruption_is_a_storage_failure(self):
        assert issubclass(StorageCorruption, StorageFailure)


# ---------------------------------------------------------------------------
# Mutate / snapshot
# ---------------------------------------------------------------------------

class TestMutate:
    def test_returns_callback_result(self, store):
        assert store.mutate(bump_users) == 1
        assert store.mutate(bump_users) == 2

    def test_change_is_visible_and_durable(self, store, db_path):
        store.mutate(bump_users)
        assert store.snapshot().seq.users == 1
        reloaded = DocumentStore(db_path).load()
        assert reloaded.seq.users == 1

    def test_snapshot_is_not_touched_by_later_writes(self, store):
        before = store.snapshot()
        store.mutate(bump_users)
        assert before.seq.users == 0
        assert store.snapshot() is not before

    def test_callback_error_publishes_nothing(self, store, db_path):
        aborted = []

        def boom(doc):
            doc.next_user_id()
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            store.mutate(boom, on_abort=lambda: aborted.append(True))
        assert aborted == [True]
        assert store.snapshot().seq.users == 0
        assert json.loads(db_path.read_text(encoding="utf-8"))["seq"]["users"] == 0

    def test_unchanged_skips_flush(self, store, monkeypatch):
        calls = []
        monkeypatch.setattr(store, "_flush", lambda doc: calls.append(doc))
        before = store.snapshot()
        assert store.mutate(lambda doc: Unchanged("same")) == "same"
        assert calls == []
        assert store.snapshot() is before

    def test_unknown_members_survive_rewrite(self, db_path):
        db_path.parent.mkdir(parents=True)
        db_path.write_text(json.dumps({
            "users": [], "listens": [], "seq": {"users": 0, "listens": 0},
            "settings": {"theme": "dark"},
        }), encoding="utf-8")
        store = DocumentStore(db_path)
        store.load()
        store.mutate(bump_users)
        on_disk = json.loads(db_path.read_text(encoding="utf-8"))
        assert on_disk["settings"] == {"theme": "dark"}

    def test_concurrent_writers_do_not_lose_updates(self, store):
        def worker():
            for _ in range(25):
                store.mutate(bump_users)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.snapshot().seq.users == 100


class TestFlushFailure:
    def test_failed_replace_keeps_previous_state(self, store, db_path, monkeypatch):
        store.mutate(bump_users)
        before_text = db_path.read_text(encoding="utf-8")
        aborted = []

        def fail_replace(self, target):
            raise OSError("disk full")

        monkeypatch.setattr(Path, "replace", fail_replace)
        with pytest.raises(StorageFailure):
            store.mutate(bump_users, on_abort=lambda: aborted.append(True))

        assert aborted == [True]
        assert store.snapshot().seq.users == 1
        assert db_path.read_text(encoding="utf-8") == before_text
        assert not db_path.with_suffix(".json.tmp").exists()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_snapshot_before_load_fails(self, db_path):
        with pytest.raises(StorageFailure):
            DocumentStore(db_path).snapshot()

    def test_closed_store_rejects_operations(self, store):
        store.close()
        assert not store.loaded
        with pytest.raises(StorageFailure):
            store.snapshot()
        with pytest.raises(StorageFailure):
            store.mutate(bump_users)

    def test_context_manager_loads_and_closes(self, db_path):
        with DocumentStore(db_path) as store:
            assert store.loaded
            store.mutate(bump_users)
        assert not store.loaded
        assert DocumentStore(db_path).load().seq.users == 1
