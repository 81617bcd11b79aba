"""
Error taxonomy for revisit.

Every failure the tool reports to the user is a RevisitError subclass.
Each class carries the process exit code the CLI uses for it:
- 1: bad user input (paths, grades, unknown items)
- 2: bad configuration
- 3: storage or IO failure
"""

from __future__ import annotations


class RevisitError(Exception):
    """Base class for all errors surfaced to the user."""

    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPath(RevisitError):
    """Raised when a file to track does not exist or is not a regular file."""


class DuplicateItem(RevisitError):
    """Raised when a path is already tracked."""


class InvalidGrade(RevisitError):
    """Raised when a review grade is outside 0-5."""


class ItemNotFound(RevisitError):
    """Raised when an item id is not present in the store."""


class InvalidUpdate(RevisitError):
    """Raised when an update changes anything but an item's review state."""


class ConfigError(RevisitError):
    """Raised when the configuration file or values are malformed."""

    exit_code = 2


class StoreCorruption(RevisitError):
    """Raised when persisted data cannot be parsed."""

    exit_code = 3


class IOFailure(RevisitError):
    """Raised on disk errors or when the editor cannot be launched."""

    exit_code = 3


__all__ = [
    "RevisitError",
    "InvalidPath",
    "DuplicateItem",
    "InvalidGrade",
    "ItemNotFound",
    "InvalidUpdate",
    "ConfigError",
    "StoreCorruption",
    "IOFailure",
]
