"""
Review Session Controller.

Runs one interactive review session as an explicit state machine:

    IDLE -> SESSION_ACTIVE -> (PRESENT -> AWAIT_GRADE -> APPLY)* -> SESSION_COMPLETE

Suspension points:
- PRESENT: the editor collaborator blocks until the user closes the file
- AWAIT_GRADE: the grade collaborator blocks until the user answers

Each graded item is committed to the store before the next one is shown,
so quitting or crashing mid-session keeps every review already applied
and leaves the rest unchanged and still due.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from loguru import logger

from .errors import InvalidPath
from .models import Item, ReviewState, ensure_utc
from .scheduler import SM2Scheduler
from .store import ItemStore

# =============================================================================
# States & Collaborators
# =============================================================================


class SessionState(Enum):
    """Where the controller is in a session."""

    IDLE = "idle"
    SESSION_ACTIVE = "session_active"
    PRESENT = "present"  # Waiting on the editor
    AWAIT_GRADE = "await_grade"  # Waiting on the user's grade
    APPLY = "apply"
    SESSION_COMPLETE = "session_complete"


class Editor(Protocol):
    """Opens a file for the user and returns when they are done."""

    def open(self, path: Path) -> None: ...


class GradeSource(Protocol):
    """Supplies a 0-5 grade for an item, or None to end the session."""

    def ask(self, item: Item, preview: dict[int, ReviewState]) -> int | None: ...


# =============================================================================
# Results
# =============================================================================


@dataclass
class ReviewResult:
    """One committed review."""

    item_id: int
    file_path: str
    grade: int
    previous: ReviewState
    updated: ReviewState

    @property
    def passed(self) -> bool:
        return self.grade >= 3


@dataclass
class SessionSummary:
    """What a session did."""

    selected: int = 0
    results: list[ReviewResult] = field(default_factory=list)
    ended_early: bool = False
    interrupted: bool = False

    @property
    def reviewed(self) -> int:
        return len(self.results)

    @property
    def remaining(self) -> int:
        return self.selected - self.reviewed


# =============================================================================
# Controller
# =============================================================================


class ReviewSession:
    """
    Drives a single review session over due items.

    A controller runs once; build a new one for the next session.
    `summary` is kept current while the session runs, so it still reports
    the committed reviews if an error propagates out of `run`.
    """

    def __init__(
        self,
        store: ItemStore,
        editor: Editor,
        grader: GradeSource,
        scheduler: SM2Scheduler | None = None,
    ):
        """
        Initialize the session controller.

        Args:
            store: Item store to select from and commit to
            editor: Collaborator that presents a file to the user
            grader: Collaborator that collects the grade
            scheduler: SM2Scheduler (creates default if None)
        """
        self.store = store
        self.editor = editor
        self.grader = grader
        self.scheduler = scheduler or SM2Scheduler()
        self.summary = SessionSummary()
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, new_state: SessionState) -> None:
        logger.debug(f"Session: {self._state.value} -> {new_state.value}")
        self._state = new_state

    def select(self, n: int | None, now: datetime, ignore_schedule: bool = False) -> list[Item]:
        """
        Items for this session: up to `n` due items in due order.

        Args:
            n: Maximum items (None for no limit)
            now: Reference time for due-ness
            ignore_schedule: Take items regardless of their next review
        """
        if n is not None and n < 1:
            return []
        if ignore_schedule:
            items = self.store.list_all()
            return items if n is None else items[:n]
        return self.store.list_due(now, limit=n)

    def run(
        self,
        n: int | None,
        now: datetime,
        ignore_schedule: bool = False,
    ) -> SessionSummary:
        """
        Run the session to completion.

        Args:
            n: Maximum number of items to review (None for all due)
            now: Session time; used for selection and as the review time
            ignore_schedule: Review items even if they are not due yet

        Returns:
            SessionSummary of the reviews committed

        Raises:
            RuntimeError: if this controller has already run
            RevisitError: from the editor, scheduler or store; the current
                item is left unchanged and earlier commits stand
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError("ReviewSession can only be run once")

        now = ensure_utc(now)
        self._transition(SessionState.SESSION_ACTIVE)

        try:
            queue = self.select(n, now, ignore_schedule)
            self.summary.selected = len(queue)
            logger.info(f"Session started: {len(queue)} items selected")

            for item in queue:
                if not self._review(item, now):
                    logger.info(f"Session ended by user after {self.summary.reviewed} reviews")
                    self.summary.ended_early = True
                    break
        except KeyboardInterrupt:
            logger.info(f"Session interrupted after {self.summary.reviewed} reviews")
            self.summary.interrupted = True
            self.summary.ended_early = True
        finally:
            self._transition(SessionState.SESSION_COMPLETE)

        return self.summary

    def _review(self, item: Item, now: datetime) -> bool:
        """Present, grade and commit one item. False means the user ended the session."""
        self._transition(SessionState.PRESENT)
        path = self.store.resolve_path(item)
        if not path.is_file():
            raise InvalidPath(f"Tracked file is missing: {path}")
        self.editor.open(path)

        self._transition(SessionState.AWAIT_GRADE)
        grade = self.grader.ask(item, self.scheduler.preview(item.review_state, now))
        if grade is None:
            return False

        self._transition(SessionState.APPLY)
        new_state = self.scheduler.next_state(item.review_state, grade, now)
        self.store.update(item.with_state(new_state))

        self.summary.results.append(
            ReviewResult(
                item_id=item.id,
                file_path=item.file_path,
                grade=grade,
                previous=item.review_state,
                updated=new_state,
            )
        )
        logger.debug(
            f"Recorded review for item {item.id}: grade={grade}, "
            f"next_review={new_state.next_review_at.isoformat()}, interval={new_state.interval_days}d"
        )
        return True


__all__ = [
    "Editor",
    "GradeSource",
    "ReviewResult",
    "ReviewSession",
    "SessionState",
    "SessionSummary",
]
