"""
Data models for tracked files and their review state.

Models are immutable pydantic models. A new review state is always a new
object, so a state that has been handed to the scheduler or the store can
never change underneath its holder.

All timestamps are timezone-aware UTC. Naive datetimes are read as UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Version of the persisted record envelope. Bump when the record layout
# changes in a way older readers cannot ignore.
FORMAT_VERSION = 1

INITIAL_EASINESS = 2.5
MINIMUM_EASINESS = 1.3


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Review State
# =============================================================================


class ReviewState(BaseModel):
    """SM-2 scheduling state for a single tracked file."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    repetition_count: int = Field(default=0, ge=0)  # Consecutive passes since last lapse
    easiness_factor: float = Field(default=INITIAL_EASINESS, ge=MINIMUM_EASINESS)
    interval_days: int = Field(default=0, ge=0)
    last_reviewed_at: datetime | None = None
    next_review_at: datetime

    @field_validator("last_reviewed_at", "next_review_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_schedule(self) -> ReviewState:
        if self.last_reviewed_at is not None:
            expected = self.last_reviewed_at + timedelta(days=self.interval_days)
            if self.next_review_at != expected:
                raise ValueError(
                    f"next_review_at {self.next_review_at.isoformat()} does not equal "
                    f"last_reviewed_at + {self.interval_days} days"
                )
        return self

    @classmethod
    def initial(cls, due_at: datetime) -> ReviewState:
        """State of a file that has never been reviewed: due at `due_at`."""
        return cls(next_review_at=due_at)

    def is_due(self, now: datetime) -> bool:
        """Check if the file is due for review at `now`."""
        return self.next_review_at <= ensure_utc(now)


# =============================================================================
# Item
# =============================================================================


class Item(BaseModel):
    """One tracked file and its scheduling state."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int = Field(ge=1)
    file_path: str = Field(min_length=1)
    created_at: datetime
    review_state: ReviewState

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def new(cls, item_id: int, file_path: str, created_at: datetime) -> Item:
        """Create a freshly registered item, due immediately."""
        created_at = ensure_utc(created_at)
        return cls(
            id=item_id,
            file_path=file_path,
            created_at=created_at,
            review_state=ReviewState.initial(created_at),
        )

    def with_state(self, state: ReviewState) -> Item:
        """Return a copy of this item carrying `state`."""
        return self.model_copy(update={"review_state": state})

    def is_due(self, now: datetime) -> bool:
        return self.review_state.is_due(now)

    @property
    def due_order(self) -> tuple[datetime, datetime, int]:
        """Sort key: next review first, then oldest registration, then id."""
        return (self.review_state.next_review_at, self.created_at, self.id)


# =============================================================================
# Persisted Envelope
# =============================================================================


class ItemRecord(BaseModel):
    """Versioned wrapper around one persisted item."""

    model_config = ConfigDict(extra="ignore")

    format_version: int = FORMAT_VERSION
    item: Item


class StoreManifest(BaseModel):
    """Store-wide metadata for the file backend."""

    model_config = ConfigDict(extra="ignore")

    format_version: int = FORMAT_VERSION
    next_id: int = Field(default=1, ge=1)


def sort_due(items: list[Item]) -> list[Item]:
    """Order items by next review, ties broken by oldest registration."""
    return sorted(items, key=lambda item: item.due_order)


__all__ = [
    "FORMAT_VERSION",
    "INITIAL_EASINESS",
    "MINIMUM_EASINESS",
    "Item",
    "ItemRecord",
    "ReviewState",
    "StoreManifest",
    "ensure_utc",
    "sort_due",
    "utcnow",
]
