"""
Item Store for revisit.

Durable collection of per-file review records. Two backends share the
ItemStore contract:
- FileItemStore: one JSON record per item under a directory, each write
  done as write-temp-then-replace (default)
- SqliteItemStore: one row per item in a SQLite database

The store only grows or mutates the review_state of existing records.
There is no deletion.

Default location: ~/.revisit/store
"""

from __future__ import annotations

import json
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from .errors import (
    ConfigError,
    DuplicateItem,
    InvalidPath,
    InvalidUpdate,
    IOFailure,
    ItemNotFound,
    StoreCorruption,
)
from .models import (
    FORMAT_VERSION,
    Item,
    ItemRecord,
    ReviewState,
    StoreManifest,
    ensure_utc,
    sort_due,
    utcnow,
)

if TYPE_CHECKING:
    from .config import Settings

# Records are a few hundred bytes; anything this large is not ours.
MAX_RECORD_BYTES = 10 * 1024

SQLITE_SUFFIXES = {".db", ".sqlite", ".sqlite3"}


# =============================================================================
# Atomic Writes
# =============================================================================


@contextmanager
def atomic_write(target: Path, encoding: str = "utf-8") -> Iterator[IO[str]]:
    """
    Open a temporary file next to `target` and replace `target` with it on success.

    The temp file is flushed and fsynced before `os.replace`, so readers see
    either the old content or the new content, never a partial write. If the
    block raises, the temp file is removed and `target` is left untouched.

    Usage:
        with atomic_write(path) as handle:
            handle.write(payload)
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    replaced = False
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)
        replaced = True
    finally:
        if not replaced:
            tmp_path.unlink(missing_ok=True)

    # os.replace has succeeded, so the write stands even if the directory
    # sync fails.
    try:
        _fsync_directory(target.parent)
    except OSError as exc:
        logger.warning(f"Could not sync directory {target.parent}: {exc}")


def _fsync_directory(directory: Path) -> None:
    """Persist the directory entry created by os.replace (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


# =============================================================================
# Record Encoding
# =============================================================================


def encode_record(item: Item) -> str:
    """Serialize an item into its versioned JSON envelope."""
    record = ItemRecord(format_version=FORMAT_VERSION, item=item)
    return record.model_dump_json(indent=2) + "\n"


def decode_record(payload: str | bytes, source: str = "record") -> Item:
    """
    Parse a versioned JSON envelope back into an Item.

    Unknown keys are ignored. Envelopes written by a newer format version
    are refused rather than guessed at.

    Raises:
        StoreCorruption: if the payload cannot be parsed or validated
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise StoreCorruption(f"{source}: not valid JSON ({exc})") from exc

    if not isinstance(data, dict):
        raise StoreCorruption(f"{source}: expected a JSON object")

    version = data.get("format_version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise StoreCorruption(f"{source}: missing or invalid format_version")
    if version > FORMAT_VERSION:
        raise StoreCorruption(
            f"{source}: written by format version {version}, "
            f"this revisit understands up to {FORMAT_VERSION}"
        )

    try:
        return ItemRecord.model_validate(data).item
    except ValidationError as exc:
        raise StoreCorruption(f"{source}: invalid record ({exc.error_count()} errors)") from exc


# =============================================================================
# Store Contract
# =============================================================================


class ItemStore(ABC):
    """
    Contract shared by all store backends.

    Paths are normalized on add: resolved to absolute, then made relative to
    `root` when the file lies under it. `resolve_path` turns a stored path
    back into a filesystem path. Duplicates are detected on that resolved
    path, so the same file is caught whichever root it was added under.
    """

    def __init__(self, root: Path | None = None):
        self.root = root.expanduser().resolve() if root is not None else None
        # Records that could not be read: id -> reason
        self.corrupt_records: dict[int, str] = {}
        # Stored paths of unreadable records: id -> path, None if not recoverable
        self._corrupt_paths: dict[int, str | None] = {}

    # --- paths ---

    def normalize_path(self, file_path: str | Path) -> str:
        """
        Validate a user-supplied path and return its stored form.

        Raises:
            InvalidPath: if the path does not name an existing regular file
        """
        path = Path(file_path).expanduser().resolve()
        if not path.exists():
            raise InvalidPath(f"File does not exist: {file_path}")
        if not path.is_file():
            raise InvalidPath(f"Not a regular file: {file_path}")

        if self.root is not None and path.is_relative_to(self.root):
            return path.relative_to(self.root).as_posix()
        return str(path)

    def _absolute(self, stored_path: str) -> Path:
        path = Path(stored_path)
        if path.is_absolute():
            return path
        if self.root is None:
            raise ConfigError(
                f"{stored_path} is tracked relative to a root directory; "
                "set root (--root or REVISIT_ROOT) to use this store"
            )
        return self.root / path

    def resolve_path(self, item: Item) -> Path:
        """
        Filesystem path of a tracked item.

        Raises:
            ConfigError: if the item is stored relative to a root and none is set
        """
        return self._absolute(item.file_path)

    def find_by_path(self, file_path: str | Path) -> Item | None:
        """Readable item tracking the file at `file_path`, or None."""
        target = Path(file_path).expanduser().resolve()
        for item in self.list_all():
            if self._absolute(item.file_path) == target:
                return item
        return None

    def _check_untracked(self, target: Path) -> None:
        existing = self.find_by_path(target)
        if existing is not None:
            raise DuplicateItem(f"Already tracked as item {existing.id}: {existing.file_path}")

        # Unreadable records still own their paths
        for item_id, stored_path in sorted(self._corrupt_paths.items()):
            if stored_path is None:
                raise StoreCorruption(
                    f"Record {item_id} is unreadable, so duplicates cannot be ruled out; "
                    "repair it before adding files"
                )
            if self._absolute(stored_path) == target:
                raise DuplicateItem(f"Already tracked as item {item_id} (unreadable record): {stored_path}")

    # --- operations ---

    def add(self, file_path: str | Path, now: datetime | None = None) -> Item:
        """
        Start tracking a file. The new item is due immediately.

        Args:
            file_path: File to track
            now: Registration time (defaults to current UTC time)

        Returns:
            The persisted Item

        Raises:
            InvalidPath: if the file does not exist
            DuplicateItem: if the file is already tracked
            StoreCorruption: if an unreadable record leaves duplicates undecidable
            ConfigError: if root-relative records exist and no root is set
        """
        stored_path = self.normalize_path(file_path)
        self._check_untracked(self._absolute(stored_path))

        created_at = ensure_utc(now) if now is not None else utcnow()
        item = self._insert(stored_path, created_at)
        logger.info(f"Added item {item.id}: {item.file_path}")
        return item

    def add_many(self, file_paths: Iterable[str | Path], now: datetime | None = None) -> list[Item]:
        """Add files in order; stops at the first failure (earlier adds are kept)."""
        return [self.add(path, now) for path in file_paths]

    def list_due(self, now: datetime, limit: int | None = None) -> list[Item]:
        """
        Items due at `now`, next review first, ties by oldest registration.

        Args:
            now: Reference time
            limit: Maximum items to return (None for all)

        Returns:
            Snapshot list of due items
        """
        now = ensure_utc(now)
        due = [item for item in self.list_all() if item.is_due(now)]
        if limit is not None:
            due = due[: max(0, limit)]
        return due

    @abstractmethod
    def get(self, item_id: int) -> Item:
        """Get an item by id (ItemNotFound if absent)."""

    @abstractmethod
    def list_all(self) -> list[Item]:
        """Every readable item, in due order."""

    @abstractmethod
    def update(self, item: Item) -> None:
        """Persist the full state of an existing item atomically."""

    @abstractmethod
    def _insert(self, stored_path: str, created_at: datetime) -> Item:
        """Allocate an id and persist a new item."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self) -> ItemStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# =============================================================================
# File Backend
# =============================================================================


class FileItemStore(ItemStore):
    """
    Directory of JSON records, one file per item.

    Layout:
        <directory>/store.json       manifest (format_version, next_id)
        <directory>/items/<id>.json  one record per item

    A record that fails to parse is skipped by listings and reported in
    `corrupt_records`; the rest of the store stays usable. A corrupt
    manifest fails the open.
    """

    MANIFEST_NAME = "store.json"
    ITEMS_DIR = "items"

    def __init__(self, directory: Path, root: Path | None = None):
        """
        Open (or create) a file store.

        Args:
            directory: Store directory
            root: Base directory for relative item paths

        Raises:
            StoreCorruption: if the manifest cannot be parsed
            IOFailure: if the directory cannot be created or read
        """
        super().__init__(root)
        self.directory = directory.expanduser()
        self.items_dir = self.directory / self.ITEMS_DIR
        self.manifest_path = self.directory / self.MANIFEST_NAME

        self._items: dict[int, Item] = {}

        try:
            self.items_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"Cannot create store directory {self.directory}: {exc}") from exc

        self._manifest = self._load_manifest()
        self.reload()

        logger.info(f"FileItemStore opened at {self.directory} ({len(self._items)} items)")

    # --- loading ---

    def _load_manifest(self) -> StoreManifest:
        if not self.manifest_path.exists():
            return StoreManifest()
        try:
            payload = self.manifest_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise IOFailure(f"Cannot read {self.manifest_path}: {exc}") from exc
        try:
            data = json.loads(payload)
            manifest = StoreManifest.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StoreCorruption(f"{self.manifest_path}: unreadable store manifest") from exc
        if manifest.format_version > FORMAT_VERSION:
            raise StoreCorruption(
                f"{self.manifest_path}: written by format version {manifest.format_version}, "
                f"this revisit understands up to {FORMAT_VERSION}"
            )
        return manifest

    def _record_path(self, item_id: int) -> Path:
        return self.items_dir / f"{item_id}.json"

    def _read_record(self, path: Path, item_id: int) -> Item:
        try:
            size = path.stat().st_size
            if size > MAX_RECORD_BYTES:
                raise StoreCorruption(f"{path}: record is {size} bytes, limit is {MAX_RECORD_BYTES}")
            payload = path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"Cannot read {path}: {exc}") from exc

        item = decode_record(payload, source=str(path))
        if item.id != item_id:
            raise StoreCorruption(f"{path}: record holds id {item.id}, expected {item_id}")
        return item

    def _salvage_path(self, path: Path) -> str | None:
        """Stored file_path of an unreadable record, if its JSON still holds one."""
        try:
            if path.stat().st_size > MAX_RECORD_BYTES:
                return None
            data = json.loads(path.read_bytes())
        except (OSError, ValueError):
            return None
        item = data.get("item") if isinstance(data, dict) else None
        file_path = item.get("file_path") if isinstance(item, dict) else None
        return file_path if isinstance(file_path, str) and file_path else None

    def reload(self) -> None:
        """Re-read every record from disk."""
        self._items.clear()
        self.corrupt_records.clear()
        self._corrupt_paths.clear()

        try:
            record_paths = sorted(self.items_dir.glob("*.json"))
        except OSError as exc:
            raise IOFailure(f"Cannot list {self.items_dir}: {exc}") from exc

        for path in record_paths:
            if not path.stem.isdigit():
                logger.warning(f"Ignoring unexpected file in store: {path.name}")
                continue
            item_id = int(path.stem)
            try:
                self._items[item_id] = self._read_record(path, item_id)
            except StoreCorruption as exc:
                logger.warning(f"Skipping corrupt record: {exc.message}")
                self.corrupt_records[item_id] = exc.message
                self._corrupt_paths[item_id] = self._salvage_path(path)

        # Ids are never reused, even if the manifest lags behind the records.
        known_ids = set(self._items) | set(self.corrupt_records)
        if known_ids and max(known_ids) >= self._manifest.next_id:
            self._manifest = self._manifest.model_copy(update={"next_id": max(known_ids) + 1})

    # --- writes ---

    def _write_manifest(self, manifest: StoreManifest) -> None:
        try:
            with atomic_write(self.manifest_path) as handle:
                handle.write(manifest.model_dump_json(indent=2) + "\n")
        except OSError as exc:
            raise IOFailure(f"Cannot write {self.manifest_path}: {exc}") from exc

    def _write_record(self, item: Item) -> None:
        path = self._record_path(item.id)
        try:
            with atomic_write(path) as handle:
                handle.write(encode_record(item))
        except OSError as exc:
            raise IOFailure(f"Cannot write {path}: {exc}") from exc

    def _insert(self, stored_path: str, created_at: datetime) -> Item:
        item_id = self._manifest.next_id
        manifest = self._manifest.model_copy(update={"next_id": item_id + 1})

        # Reserve the id before writing the record so a crash in between
        # skips the id instead of handing it out twice.
        self._write_manifest(manifest)
        self._manifest = manifest

        item = Item.new(item_id, stored_path, created_at)
        self._write_record(item)
        self._items[item.id] = item
        return item

    # --- reads ---

    def get(self, item_id: int) -> Item:
        if item_id in self.corrupt_records:
            raise StoreCorruption(self.corrupt_records[item_id])
        try:
            return self._items[item_id]
        except KeyError:
            raise ItemNotFound(f"No item with id {item_id}") from None

    def list_all(self) -> list[Item]:
        return sort_due(list(self._items.values()))

    def update(self, item: Item) -> None:
        """
        Replace the record of an existing item.

        Raises:
            ItemNotFound: if the id was never added
            InvalidUpdate: if file_path or created_at differ from the stored item
            StoreCorruption: if the existing record is unreadable
            IOFailure: on disk errors
        """
        current = self.get(item.id)
        if current.file_path != item.file_path or current.created_at != item.created_at:
            raise InvalidUpdate(f"Item {item.id}: only review_state may change")

        self._write_record(item)
        self._items[item.id] = item
        logger.debug(
            f"Updated item {item.id}: next_review={item.review_state.next_review_at.isoformat()}, "
            f"interval={item.review_state.interval_days}d"
        )


# =============================================================================
# SQLite Backend
# =============================================================================


def _timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so text ordering matches time ordering."""
    return ensure_utc(value).isoformat(timespec="microseconds")


class SqliteItemStore(ItemStore):
    """
    SQLite-backed item store.

    One row per item; the review state is kept as a JSON column next to an
    indexed next_review_at. Each add/update commits its own transaction.
    """

    def __init__(self, db_path: Path, root: Path | None = None):
        """
        Open (or create) a SQLite store.

        Args:
            db_path: Database file
            root: Base directory for relative item paths

        Raises:
            StoreCorruption: if the file is not a usable revisit database
            IOFailure: if the file cannot be opened
        """
        super().__init__(root)
        self.db_path = db_path.expanduser()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"Cannot create {self.db_path.parent}: {exc}") from exc

        self._conn: sqlite3.Connection | None = None
        self._init_schema()

        logger.info(f"SqliteItemStore opened at {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(str(self.db_path))
            except sqlite3.Error as exc:
                raise IOFailure(f"Cannot open {self.db_path}: {exc}") from exc
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.OperationalError as exc:
            raise IOFailure(f"Failed to {action}: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            raise StoreCorruption(f"Failed to {action}: {exc}") from exc

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._translate_errors("initialize schema"):
            version = self.conn.execute("PRAGMA user_version").fetchone()[0]
            if version > FORMAT_VERSION:
                raise StoreCorruption(
                    f"{self.db_path}: written by format version {version}, "
                    f"this revisit understands up to {FORMAT_VERSION}"
                )

            with self.conn:
                # AUTOINCREMENT keeps ids from ever being reused
                self.conn.execute("""
                    CREATE TABLE IF NOT EXISTS items (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        file_path TEXT NOT NULL UNIQUE,
                        created_at TEXT NOT NULL,
                        next_review_at TEXT NOT NULL,
                        review_state TEXT NOT NULL
                    )
                """)
                self.conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_items_next_review
                    ON items(next_review_at, created_at)
                """)
                self.conn.execute(f"PRAGMA user_version = {FORMAT_VERSION}")

    def _row_to_item(self, row: sqlite3.Row) -> Item:
        source = f"{self.db_path}#{row['id']}"
        try:
            state = json.loads(row["review_state"])
        except (json.JSONDecodeError, TypeError) as exc:
            raise StoreCorruption(f"{source}: review_state is not valid JSON") from exc
        try:
            return Item.model_validate(
                {
                    "id": row["id"],
                    "file_path": row["file_path"],
                    "created_at": row["created_at"],
                    "review_state": state,
                }
            )
        except ValidationError as exc:
            raise StoreCorruption(f"{source}: invalid record ({exc.error_count()} errors)") from exc

    @staticmethod
    def _state_json(state: ReviewState) -> str:
        return state.model_dump_json()

    def _insert(self, stored_path: str, created_at: datetime) -> Item:
        state = ReviewState.initial(ensure_utc(created_at))
        with self._translate_errors("add item"):
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        """
                        INSERT INTO items (file_path, created_at, next_review_at, review_state)
                        VALUES (?, ?, ?, ?)
                    """,
                        (
                            stored_path,
                            _timestamp(created_at),
                            _timestamp(state.next_review_at),
                            self._state_json(state),
                        ),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateItem(f"Already tracked: {stored_path}") from exc
        return Item.new(cursor.lastrowid, stored_path, created_at)

    def get(self, item_id: int) -> Item:
        with self._translate_errors("read item"):
            row = self.conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ItemNotFound(f"No item with id {item_id}")
        return self._row_to_item(row)

    def list_all(self) -> list[Item]:
        with self._translate_errors("list items"):
            rows = self.conn.execute(
                "SELECT * FROM items ORDER BY next_review_at ASC, created_at ASC, id ASC"
            ).fetchall()

        self.corrupt_records.clear()
        self._corrupt_paths.clear()
        items = []
        for row in rows:
            try:
                items.append(self._row_to_item(row))
            except StoreCorruption as exc:
                logger.warning(f"Skipping corrupt record: {exc.message}")
                self.corrupt_records[row["id"]] = exc.message
                self._corrupt_paths[row["id"]] = row["file_path"]
        return sort_due(items)

    def update(self, item: Item) -> None:
        """
        Replace the review state of an existing item in one transaction.

        Raises:
            ItemNotFound: if the id was never added
            InvalidUpdate: if file_path or created_at differ from the stored item
            StoreCorruption: if the existing row is unreadable
            IOFailure: on disk errors
        """
        current = self.get(item.id)
        if current.file_path != item.file_path or current.created_at != item.created_at:
            raise InvalidUpdate(f"Item {item.id}: only review_state may change")

        state = item.review_state
        with self._translate_errors("update item"):
            with self.conn:
                self.conn.execute(
                    """
                    UPDATE items SET next_review_at = ?, review_state = ?
                    WHERE id = ?
                """,
                    (_timestamp(state.next_review_at), self._state_json(state), item.id),
                )
        logger.debug(
            f"Updated item {item.id}: next_review={state.next_review_at.isoformat()}, "
            f"interval={state.interval_days}d"
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# =============================================================================
# Factory
# =============================================================================


def open_store(settings: Settings) -> ItemStore:
    """
    Open the store named by the configuration.

    A database_path ending in .db/.sqlite/.sqlite3 selects the SQLite
    backend; anything else is a FileItemStore directory.
    """
    path = settings.database_path
    if path.suffix.lower() in SQLITE_SUFFIXES:
        return SqliteItemStore(path, root=settings.root)
    return FileItemStore(path, root=settings.root)


__all__ = [
    "MAX_RECORD_BYTES",
    "FileItemStore",
    "ItemStore",
    "SqliteItemStore",
    "atomic_write",
    "decode_record",
    "encode_record",
    "open_store",
]
