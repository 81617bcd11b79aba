"""
SM-2 Spaced Repetition Scheduler.

Implements the SuperMemo 2 algorithm as a pure function from
(old state, grade, review time) to a new state. Nothing here touches
the clock, the disk or the terminal.

SM-2 Grade Scale:
0 - Complete blackout
1 - Incorrect response; the correct one remembered
2 - Incorrect response; the correct one seemed easy to recall
3 - Correct response recalled with serious difficulty
4 - Correct response after a hesitation
5 - Perfect response
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .errors import InvalidGrade
from .models import MINIMUM_EASINESS, ReviewState, ensure_utc

GRADES = range(0, 6)

GRADE_DESCRIPTIONS = {
    0: "Complete blackout",
    1: "Incorrect; the correct answer remembered",
    2: "Incorrect; the correct answer seemed easy to recall",
    3: "Correct, recalled with serious difficulty",
    4: "Correct after a hesitation",
    5: "Perfect response",
}


@dataclass(frozen=True)
class SM2Config:
    """Configuration for SM-2 algorithm."""

    minimum_easiness: float = MINIMUM_EASINESS
    first_interval: int = 1  # Days for first review
    second_interval: int = 6  # Days for second review
    passing_grade: int = 3


def validate_grade(quality: object) -> int:
    """
    Check that `quality` is an integer grade in 0-5.

    Raises:
        InvalidGrade: for anything else (bools included)
    """
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidGrade(f"Grade must be an integer 0-5, got {quality!r}")
    if quality not in GRADES:
        raise InvalidGrade(f"Grade must be between 0 and 5, got {quality}")
    return quality


class SM2Scheduler:
    """
    Implements the SM-2 spaced repetition algorithm.

    Each tracked file has:
    - Easiness Factor (EF): How easy the item is (2.5 default, min 1.3)
    - Interval: Days until next review
    - Repetitions: Consecutive passing reviews since the last lapse
    """

    def __init__(self, config: SM2Config | None = None):
        """
        Initialize SM-2 scheduler.

        Args:
            config: Custom configuration (uses defaults if None)
        """
        self.config = config or SM2Config()

    def next_easiness(self, easiness_factor: float, quality: int) -> float:
        """EF' = max(min_ef, EF + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02)))"""
        ef_delta = 0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)
        return max(self.config.minimum_easiness, easiness_factor + ef_delta)

    def next_state(
        self,
        state: ReviewState,
        quality: int,
        review_time: datetime,
    ) -> ReviewState:
        """
        Calculate the review state after grading a review.

        Args:
            state: Current review state
            quality: User grade (0-5)
            review_time: When the review happened

        Returns:
            New ReviewState; `state` is left untouched

        Raises:
            InvalidGrade: if quality is outside 0-5
        """
        quality = validate_grade(quality)
        review_time = ensure_utc(review_time)

        new_ef = self.next_easiness(state.easiness_factor, quality)

        if quality < self.config.passing_grade:
            # Lapse - start over
            new_repetitions = 0
            new_interval = self.config.first_interval
        else:
            new_repetitions = state.repetition_count + 1

            if new_repetitions == 1:
                new_interval = self.config.first_interval
            elif new_repetitions == 2:
                new_interval = self.config.second_interval
            else:
                new_interval = round(state.interval_days * new_ef)

        return ReviewState(
            repetition_count=new_repetitions,
            easiness_factor=new_ef,
            interval_days=new_interval,
            last_reviewed_at=review_time,
            next_review_at=review_time + timedelta(days=new_interval),
        )

    def preview(self, state: ReviewState, review_time: datetime) -> dict[int, ReviewState]:
        """
        Outcome of every possible grade, without committing any of them.

        Returns:
            Mapping of grade -> resulting ReviewState
        """
        return {grade: self.next_state(state, grade, review_time) for grade in GRADES}


_default_scheduler = SM2Scheduler()


def next_state(state: ReviewState, quality: int, review_time: datetime) -> ReviewState:
    """Module-level SM-2 step using the default configuration."""
    return _default_scheduler.next_state(state, quality, review_time)


def preview(state: ReviewState, review_time: datetime) -> dict[int, ReviewState]:
    return _default_scheduler.preview(state, review_time)


__all__ = [
    "GRADES",
    "GRADE_DESCRIPTIONS",
    "SM2Config",
    "SM2Scheduler",
    "next_state",
    "preview",
    "validate_grade",
]
