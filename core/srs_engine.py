"""
RecallEngine – SM-2 Memory Model
=================================
Implements the SuperMemo-2 update rule as pure functions: a card's current
memory state plus a review outcome in, the next memory state out.  No I/O
and no shared mutable state, so calls for different cards can run
concurrently without synchronisation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import List, Tuple

from core.errors import InvalidGrade
from core.models import (
    GRADUATION_INTERVAL_DAYS,
    MIN_EASE,
    Card,
    CardGraduated,
    CardLapsed,
    CardReviewed,
    DomainEvent,
    ReviewOutcome,
    as_utc,
)

log = logging.getLogger(__name__)

LAPSE_EASE_PENALTY = 0.2
PASSING_GRADE = 3


@dataclass(frozen=True)
class ReviewResult:
    card: Card
    events: Tuple[DomainEvent, ...] = ()


# ---------------------------------------------------------------------------
# SM-2 core algorithm
# ---------------------------------------------------------------------------

def validate_grade(quality) -> int:
    # bool is an int subclass but never a grade
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidGrade(quality)
    if quality < 0 or quality > 5:
        raise InvalidGrade(quality)
    return quality


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_sm2(
    quality: int,
    repetitions: int,
    easiness: float,
    interval: int,
) -> Tuple[int, float, int]:
    """Apply the SM-2 algorithm and return updated scheduling values.

    Parameters
    ----------
    quality : int
        User self-assessment grade (0 = total blackout … 5 = perfect).
    repetitions : int
        Current number of consecutive successful reviews.
    easiness : float
        Current easiness factor (EF), clamped to a minimum of 1.3.
    interval : int
        Current inter-repetition interval in days.

    Returns
    -------
    (new_repetitions, new_easiness, new_interval)

    Raises
    ------
    InvalidGrade
        If *quality* is not an integer in 0..5.
    """
    validate_grade(quality)

    # Failed review: reset the streak, fixed ease penalty
    if quality < PASSING_GRADE:
        new_repetitions = 0
        new_interval = 1
        new_easiness = max(MIN_EASE, easiness - LAPSE_EASE_PENALTY)
        return new_repetitions, new_easiness, new_interval

    new_repetitions = repetitions + 1
    new_easiness = easiness + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02))
    new_easiness = max(MIN_EASE, new_easiness)

    if new_repetitions == 1:
        new_interval = 1
    elif new_repetitions == 2:
        new_interval = 6
    else:
        new_interval = _round_half_up(interval * new_easiness)

    return new_repetitions, new_easiness, new_interval


# ---------------------------------------------------------------------------
# Card-level transform
# ---------------------------------------------------------------------------

def review_card(card: Card, outcome: ReviewOutcome) -> ReviewResult:
    """Return *card* as it stands after *outcome*, plus the resulting events.

    The input card is never modified.  ``last_reviewed_at`` is taken from
    ``outcome.recorded_at``, so replaying the same pair yields the same card.
    """
    grade = validate_grade(outcome.grade)
    reviewed_at = as_utc(outcome.recorded_at)

    new_reps, new_ef, new_interval = calculate_sm2(
        grade, card.repetition_count, card.ease_factor, card.interval_days
    )

    success = grade >= PASSING_GRADE
    total = card.total_reviews + 1
    avg_ms = (card.average_response_ms * card.total_reviews + outcome.response_ms) / total

    updated = replace(
        card,
        ease_factor=new_ef,
        interval_days=new_interval,
        repetition_count=new_reps,
        lapse_count=card.lapse_count if success else card.lapse_count + 1,
        last_reviewed_at=reviewed_at,
        due_at=reviewed_at + timedelta(days=new_interval),
        total_reviews=total,
        correct_reviews=card.correct_reviews + (1 if success else 0),
        average_response_ms=avg_ms,
    )

    events: List[DomainEvent] = [
        CardReviewed(
            learner_id=card.learner_id,
            card_id=card.id,
            grade=grade,
            ease_factor=new_ef,
            interval_days=new_interval,
            due_at=updated.due_at,
            at=reviewed_at,
        )
    ]
    if not success:
        events.append(CardLapsed(card.learner_id, card.id, updated.lapse_count, reviewed_at))
    elif (
        new_interval >= GRADUATION_INTERVAL_DAYS
        and card.interval_days < GRADUATION_INTERVAL_DAYS
    ):
        events.append(CardGraduated(card.learner_id, card.id, new_interval, reviewed_at))

    log.debug(
        "Reviewed card %s (q=%d) → reps=%d ef=%.2f interval=%d next=%s",
        card.id, grade, new_reps, new_ef, new_interval, updated.due_at,
    )
    return ReviewResult(card=updated, events=tuple(events))
