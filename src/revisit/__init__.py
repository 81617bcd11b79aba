"""
revisit: spaced repetition for plain-text files.

Tracks a collection of files and tells you when each should next be
reviewed, using the SuperMemo-2 scheduling formula.

Components:
- SM2Scheduler: Pure SM-2 review scheduling
- ItemStore: Durable per-file review records (JSON files or SQLite)
- ReviewSession: Interactive review session state machine
- Settings: Configuration from .revisit.toml and REVISIT_* variables
"""

from .config import Settings, load_settings
from .errors import (
    ConfigError,
    DuplicateItem,
    InvalidGrade,
    InvalidPath,
    InvalidUpdate,
    IOFailure,
    ItemNotFound,
    RevisitError,
    StoreCorruption,
)
from .models import Item, ReviewState
from .scheduler import SM2Config, SM2Scheduler, next_state
from .session import ReviewSession, SessionState, SessionSummary
from .store import FileItemStore, ItemStore, SqliteItemStore, open_store

__version__ = "0.1.0"

__all__ = [
    # Models
    "Item",
    "ReviewState",
    # Scheduling
    "SM2Config",
    "SM2Scheduler",
    "next_state",
    # Persistence
    "ItemStore",
    "FileItemStore",
    "SqliteItemStore",
    "open_store",
    # Sessions
    "ReviewSession",
    "SessionState",
    "SessionSummary",
    # Configuration
    "Settings",
    "load_settings",
    # Errors
    "RevisitError",
    "InvalidPath",
    "DuplicateItem",
    "InvalidGrade",
    "ItemNotFound",
    "InvalidUpdate",
    "StoreCorruption",
    "IOFailure",
    "ConfigError",
]
