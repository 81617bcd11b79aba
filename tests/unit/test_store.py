"""
Unit tests for the item stores.

Most tests run against both backends through the parametrized `store`
fixture; backend-specific recovery behavior is tested separately.
"""

import json
import sqlite3
from datetime import timedelta

import pytest

from revisit.errors import (
    ConfigError,
    DuplicateItem,
    InvalidPath,
    InvalidUpdate,
    IOFailure,
    ItemNotFound,
    StoreCorruption,
)
from revisit.models import FORMAT_VERSION, ReviewState
from revisit.scheduler import next_state
from revisit.store import (
    MAX_RECORD_BYTES,
    FileItemStore,
    SqliteItemStore,
    atomic_write,
    decode_record,
    encode_record,
    open_store,
)
from revisit.config import Settings


# ============================================================================
# Add
# ============================================================================


class TestAdd:
    """Tests for ItemStore.add."""

    def test_new_item_defaults(self, store, note_files, now):
        item = store.add(note_files[0], now)
        state = item.review_state

        assert item.id >= 1
        assert item.created_at == now
        assert state.repetition_count == 0
        assert state.easiness_factor == 2.5
        assert state.interval_days == 0
        assert state.last_reviewed_at is None
        assert state.next_review_at == item.created_at

    def test_new_item_is_due_immediately(self, store, note_files, now):
        item = store.add(note_files[0], now)
        assert [due.id for due in store.list_due(now)] == [item.id]

    def test_persisted_before_return(self, store, reopen, note_files, now):
        item = store.add(note_files[0], now)
        assert reopen(store).get(item.id) == item

    def test_missing_file(self, store, tmp_path, now):
        with pytest.raises(InvalidPath):
            store.add(tmp_path / "nope.md", now)
        assert store.list_all() == []

    def test_directory_is_not_a_file(self, store, notes_dir, now):
        with pytest.raises(InvalidPath):
            store.add(notes_dir, now)

    def test_duplicate_leaves_store_unchanged(self, store, note_files, now):
        item = store.add(note_files[0], now)
        before = store.list_due(now)

        with pytest.raises(DuplicateItem):
            store.add(note_files[0], now + timedelta(minutes=5))

        assert store.list_due(now) == before
        assert store.get(item.id) == item

    def test_duplicate_through_other_spelling(self, store, note_files, now):
        """Paths are normalized before the duplicate check."""
        path = note_files[0]
        store.add(path, now)
        with pytest.raises(DuplicateItem):
            store.add(path.parent / ".." / path.parent.name / path.name, now)

    def test_ids_are_unique_and_increasing(self, store, note_files, now):
        ids = [store.add(path, now).id for path in note_files]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_add_many_stops_at_first_error(self, store, note_files, tmp_path, now):
        paths = [note_files[0], tmp_path / "missing.md", note_files[1]]
        with pytest.raises(InvalidPath):
            store.add_many(paths, now)
        assert [item.file_path for item in store.list_all()] == [str(note_files[0].resolve())]


class TestRootRelativePaths:
    """Tests for root-relative path storage."""

    def test_stored_relative_to_root(self, tmp_path, notes_dir, now):
        store = FileItemStore(tmp_path / "store", root=tmp_path)
        item = store.add(notes_dir / "tcp.md", now)
        assert item.file_path == "notes/tcp.md"
        assert store.resolve_path(item) == (tmp_path / "notes" / "tcp.md").resolve()

    def test_outside_root_stays_absolute(self, tmp_path, notes_dir, now):
        root = tmp_path / "elsewhere"
        root.mkdir()
        store = FileItemStore(tmp_path / "store", root=root)
        item = store.add(notes_dir / "tcp.md", now)
        assert item.file_path == str((notes_dir / "tcp.md").resolve())

    def test_relative_item_needs_root(self, open_backend, notes_dir, now):
        item = open_backend(root=notes_dir.parent).add(notes_dir / "tcp.md", now)
        with pytest.raises(ConfigError):
            open_backend().resolve_path(item)

    def test_duplicate_added_without_root(self, open_backend, notes_dir, now):
        """A file tracked under a root cannot be tracked again by absolute path."""
        open_backend(root=notes_dir.parent).add(notes_dir / "tcp.md", now)

        with pytest.raises(ConfigError):
            open_backend().add(notes_dir / "tcp.md", now)

        assert [item.file_path for item in open_backend(root=notes_dir.parent).list_all()] == [
            "notes/tcp.md"
        ]

    def test_duplicate_added_under_root(self, open_backend, notes_dir, now):
        """A file tracked by absolute path is found again once a root is set."""
        first = open_backend().add(notes_dir / "tcp.md", now)

        with pytest.raises(DuplicateItem):
            open_backend(root=notes_dir.parent).add(notes_dir / "tcp.md", now)

        assert open_backend(root=notes_dir.parent).list_all() == [first]


# ============================================================================
# List Due
# ============================================================================


class TestListDue:
    """Tests for ItemStore.list_due ordering and filtering."""

    def test_orders_by_next_review_then_created(self, store, note_files, now):
        first = store.add(note_files[0], now)
        second = store.add(note_files[1], now + timedelta(seconds=1))
        third = store.add(note_files[2], now + timedelta(seconds=2))

        # Push `first` one day out; `third` gets reviewed into the past.
        store.update(first.with_state(next_state(first.review_state, 5, now)))
        earlier = now - timedelta(days=3)
        store.update(third.with_state(ReviewState(
            repetition_count=1,
            interval_days=1,
            last_reviewed_at=earlier,
            next_review_at=earlier + timedelta(days=1),
        )))

        check_time = now + timedelta(days=2)
        assert [item.id for item in store.list_due(check_time)] == [third.id, second.id, first.id]

    def test_ties_broken_by_registration(self, store, note_files, now):
        later = store.add(note_files[0], now + timedelta(minutes=1))
        earlier = store.add(note_files[1], now)
        for item in (later, earlier):
            store.update(item.with_state(ReviewState(next_review_at=now)))

        # Same next review: oldest registration first
        assert [item.id for item in store.list_due(now)] == [earlier.id, later.id]

    def test_future_items_excluded(self, store, note_files, now):
        item = store.add(note_files[0], now)
        store.update(item.with_state(next_state(item.review_state, 4, now)))
        assert store.list_due(now) == []
        assert [due.id for due in store.list_due(now + timedelta(days=1))] == [item.id]

    def test_limit(self, store, note_files, now):
        for path in note_files:
            store.add(path, now)
        assert len(store.list_due(now, limit=2)) == 2
        assert store.list_due(now, limit=0) == []

    def test_snapshot(self, store, note_files, now):
        """Later changes do not alter an already returned list."""
        item = store.add(note_files[0], now)
        due = store.list_due(now)
        store.update(item.with_state(next_state(item.review_state, 5, now)))
        assert due[0].review_state.interval_days == 0


# ============================================================================
# Get / Update
# ============================================================================


class TestUpdate:
    """Tests for ItemStore.get and update."""

    def test_round_trip(self, store, reopen, note_files, now):
        item = store.add(note_files[0], now)
        updated = item.with_state(next_state(item.review_state, 3, now))
        store.update(updated)

        reloaded = reopen(store).get(item.id)
        assert reloaded == updated
        assert reloaded.review_state.easiness_factor == updated.review_state.easiness_factor

    def test_unknown_id(self, store, note_files, now):
        item = store.add(note_files[0], now)
        with pytest.raises(ItemNotFound):
            store.get(item.id + 100)
        with pytest.raises(ItemNotFound):
            store.update(item.model_copy(update={"id": item.id + 100}))

    @pytest.mark.parametrize("field,value", [
        ("file_path", "/somewhere/else.md"),
        ("created_at", "2020-01-01T00:00:00Z"),
    ])
    def test_only_review_state_may_change(self, store, reopen, note_files, now, field, value):
        item = store.add(note_files[0], now)
        changed = item.model_validate({**item.model_dump(), field: value})

        with pytest.raises(InvalidUpdate) as exc_info:
            store.update(changed)

        assert exc_info.value.exit_code == 1
        assert reopen(store).get(item.id) == item


# ============================================================================
# File Backend
# ============================================================================


class TestFileStoreRecovery:
    """Tests for FileItemStore corruption handling and layout."""

    def test_layout(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        record = json.loads((file_store.items_dir / f"{item.id}.json").read_text())
        manifest = json.loads(file_store.manifest_path.read_text())

        assert record["format_version"] == FORMAT_VERSION
        assert record["item"]["file_path"] == str(note_files[0].resolve())
        assert manifest["next_id"] == item.id + 1

    def test_corrupt_record_skipped(self, file_store, note_files, now):
        good = file_store.add(note_files[0], now)
        bad = file_store.add(note_files[1], now)
        (file_store.items_dir / f"{bad.id}.json").write_text("{ not json", encoding="utf-8")

        reopened = FileItemStore(file_store.directory)
        assert [item.id for item in reopened.list_due(now)] == [good.id]
        assert bad.id in reopened.corrupt_records

        with pytest.raises(StoreCorruption):
            reopened.get(bad.id)
        with pytest.raises(StoreCorruption):
            reopened.update(bad)

        # The healthy record is still updatable
        reopened.update(good.with_state(next_state(good.review_state, 5, now)))

    def test_corrupt_record_keeps_its_path(self, file_store, note_files, now):
        """A record that fails validation still blocks re-adding its file."""
        bad = file_store.add(note_files[0], now)
        path = file_store.items_dir / f"{bad.id}.json"
        data = json.loads(path.read_text())
        data["item"]["review_state"]["easiness_factor"] = 1.0
        path.write_text(json.dumps(data))

        reopened = FileItemStore(file_store.directory)
        with pytest.raises(DuplicateItem):
            reopened.add(note_files[0], now)

        other = reopened.add(note_files[1], now)
        assert other.id > bad.id

    def test_unreadable_record_blocks_add(self, file_store, note_files, now):
        """With a record whose path is lost, no file can be added."""
        bad = file_store.add(note_files[0], now)
        (file_store.items_dir / f"{bad.id}.json").write_text("{ not json", encoding="utf-8")

        reopened = FileItemStore(file_store.directory)
        for path in note_files[:2]:
            with pytest.raises(StoreCorruption):
                reopened.add(path, now)

        assert sorted(p.name for p in file_store.items_dir.iterdir()) == [f"{bad.id}.json"]

    def test_newer_format_refused(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        path = file_store.items_dir / f"{item.id}.json"
        data = json.loads(path.read_text())
        data["format_version"] = FORMAT_VERSION + 1
        path.write_text(json.dumps(data))

        reopened = FileItemStore(file_store.directory)
        assert "format version" in reopened.corrupt_records[item.id]

    def test_unknown_fields_ignored(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        path = file_store.items_dir / f"{item.id}.json"
        data = json.loads(path.read_text())
        data["written_by"] = "a later release"
        data["item"]["tags"] = ["networking"]
        path.write_text(json.dumps(data))

        assert FileItemStore(file_store.directory).get(item.id) == item

    def test_oversized_record_rejected(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        path = file_store.items_dir / f"{item.id}.json"
        path.write_text(" " * (MAX_RECORD_BYTES + 1) + path.read_text())

        reopened = FileItemStore(file_store.directory)
        assert item.id in reopened.corrupt_records

    def test_invariant_violation_is_corruption(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        path = file_store.items_dir / f"{item.id}.json"
        data = json.loads(path.read_text())
        data["item"]["review_state"]["easiness_factor"] = 1.0
        path.write_text(json.dumps(data))

        assert item.id in FileItemStore(file_store.directory).corrupt_records

    def test_corrupt_manifest_fails_open(self, file_store):
        file_store.manifest_path.write_text("garbage")
        with pytest.raises(StoreCorruption):
            FileItemStore(file_store.directory)

    def test_ids_not_reused_without_manifest(self, file_store, note_files, now):
        first = file_store.add(note_files[0], now)
        file_store.manifest_path.unlink()

        reopened = FileItemStore(file_store.directory)
        second = reopened.add(note_files[1], now)
        assert second.id > first.id

    def test_stray_files_ignored(self, file_store, note_files, now):
        file_store.add(note_files[0], now)
        (file_store.items_dir / "notes.json").write_text("{}")
        reopened = FileItemStore(file_store.directory)
        assert len(reopened.list_all()) == 1
        assert reopened.corrupt_records == {}


class TestAtomicWrite:
    """Tests for the atomic_write context manager."""

    def test_replaces_content(self, tmp_path):
        target = tmp_path / "record.json"
        target.write_text("old")
        with atomic_write(target) as handle:
            handle.write("new")
        assert target.read_text() == "new"

    def test_failure_keeps_previous_content(self, tmp_path):
        target = tmp_path / "record.json"
        target.write_text("old")

        with pytest.raises(RuntimeError):
            with atomic_write(target) as handle:
                handle.write("half-writ")
                raise RuntimeError("crash mid-write")

        assert target.read_text() == "old"
        assert list(tmp_path.iterdir()) == [target]

    def test_failed_update_keeps_record(self, file_store, note_files, now, monkeypatch):
        """A crash while replacing a record leaves the previous record readable."""
        item = file_store.add(note_files[0], now)

        def failing_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("revisit.store.os.replace", failing_replace)
        with pytest.raises(IOFailure):
            file_store.update(item.with_state(next_state(item.review_state, 5, now)))
        monkeypatch.undo()

        assert FileItemStore(file_store.directory).get(item.id) == item

    def test_directory_sync_failure_keeps_update(self, file_store, note_files, now, monkeypatch):
        """Once the record is replaced, the update stands in memory and on disk."""
        item = file_store.add(note_files[0], now)
        updated = item.with_state(next_state(item.review_state, 5, now))

        def failing_sync(directory):
            raise OSError("fsync not supported")

        monkeypatch.setattr("revisit.store._fsync_directory", failing_sync)
        file_store.update(updated)
        monkeypatch.undo()

        assert file_store.get(item.id) == updated
        assert FileItemStore(file_store.directory).get(item.id) == updated


class TestRecordEncoding:
    """Tests for the versioned record envelope."""

    def test_round_trip(self, file_store, note_files, now):
        item = file_store.add(note_files[0], now)
        assert decode_record(encode_record(item)) == item

    @pytest.mark.parametrize("payload", [
        "",
        "[]",
        '{"item": {}}',
        '{"format_version": "1", "item": {}}',
        '{"format_version": 1, "item": {"id": 1}}',
    ])
    def test_unparsable(self, payload):
        with pytest.raises(StoreCorruption):
            decode_record(payload)


# ============================================================================
# SQLite Backend
# ============================================================================


class TestSqliteStore:
    """Tests for SqliteItemStore specifics."""

    def test_not_a_database(self, tmp_path):
        path = tmp_path / "store.db"
        path.write_bytes(b"definitely not sqlite" * 100)
        with pytest.raises(StoreCorruption):
            SqliteItemStore(path)

    def test_corrupt_row_skipped(self, sqlite_store, note_files, now):
        good = sqlite_store.add(note_files[0], now)
        bad = sqlite_store.add(note_files[1], now)
        with sqlite3.connect(sqlite_store.db_path) as conn:
            conn.execute("UPDATE items SET review_state = '{oops' WHERE id = ?", (bad.id,))

        assert [item.id for item in sqlite_store.list_due(now)] == [good.id]
        assert bad.id in sqlite_store.corrupt_records
        with pytest.raises(StoreCorruption):
            sqlite_store.get(bad.id)

    def test_corrupt_row_keeps_its_path(self, sqlite_store, note_files, now):
        bad = sqlite_store.add(note_files[0], now)
        with sqlite3.connect(sqlite_store.db_path) as conn:
            conn.execute("UPDATE items SET review_state = '{oops' WHERE id = ?", (bad.id,))

        with pytest.raises(DuplicateItem):
            sqlite_store.add(note_files[0], now)
        assert sqlite_store.add(note_files[1], now).id > bad.id

    def test_newer_schema_refused(self, sqlite_store):
        sqlite_store.close()
        with sqlite3.connect(sqlite_store.db_path) as conn:
            conn.execute(f"PRAGMA user_version = {FORMAT_VERSION + 1}")
        with pytest.raises(StoreCorruption):
            SqliteItemStore(sqlite_store.db_path)


class TestOpenStore:
    """Tests for backend selection."""

    @pytest.mark.parametrize("name,backend", [
        ("store", FileItemStore),
        ("store.db", SqliteItemStore),
        ("store.sqlite3", SqliteItemStore),
    ])
    def test_backend_by_suffix(self, tmp_path, name, backend):
        settings = Settings(database_path=tmp_path / name, editor_command="true")
        with open_store(settings) as store:
            assert isinstance(store, backend)
