"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add src/ to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from revisit.store import FileItemStore, SqliteItemStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    """A fixed point in time for deterministic scheduling."""
    return datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def notes_dir(tmp_path):
    """A directory with five sample notes."""
    directory = tmp_path / "notes"
    directory.mkdir()
    for name in ["osi", "tcp", "udp", "vlan", "ospf"]:
        (directory / f"{name}.md").write_text(f"# {name.upper()}\n\nSome notes.\n", encoding="utf-8")
    return directory


@pytest.fixture
def note_files(notes_dir):
    """Sample note paths in a stable order."""
    return sorted(notes_dir.glob("*.md"))


@pytest.fixture
def file_store(tmp_path):
    """FileItemStore in a temp directory."""
    return FileItemStore(tmp_path / "store")


@pytest.fixture
def sqlite_store(tmp_path):
    """SqliteItemStore in a temp file."""
    store = SqliteItemStore(tmp_path / "store.db")
    yield store
    store.close()


@pytest.fixture(params=["files", "sqlite"])
def store(request, tmp_path):
    """Each store backend in turn."""
    if request.param == "files":
        yield FileItemStore(tmp_path / "store")
    else:
        backend = SqliteItemStore(tmp_path / "store.db")
        yield backend
        backend.close()


@pytest.fixture(params=["files", "sqlite"])
def open_backend(request, tmp_path):
    """Open each backend on one location, with a different root per call."""
    opened = []

    def _open(root=None):
        if request.param == "files":
            backend = FileItemStore(tmp_path / "store", root=root)
        else:
            backend = SqliteItemStore(tmp_path / "store.db", root=root)
        opened.append(backend)
        return backend

    yield _open
    for backend in opened:
        backend.close()


@pytest.fixture
def reopen(tmp_path):
    """Open a fresh handle on the same store a `store` fixture created."""
    opened = []

    def _reopen(store):
        if isinstance(store, SqliteItemStore):
            fresh = SqliteItemStore(store.db_path, root=store.root)
        else:
            fresh = FileItemStore(store.directory, root=store.root)
        opened.append(fresh)
        return fresh

    yield _reopen
    for fresh in opened:
        fresh.close()
