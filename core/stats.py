"""
RecallEngine – Learner statistics
==================================
Aggregate figures for a learner's progress screen, and the quality grade
given to a finished review session.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable

from core.models import DEFAULT_EASE, Card, CardStatus, ReviewRecord, SessionQuality, as_utc

IDEAL_RESPONSE_MS = 3000.0
DEFAULT_ENGAGEMENT = 50.0


@dataclass(frozen=True)
class UpcomingReviews:
    today: int = 0
    tomorrow: int = 0
    this_week: int = 0
    next_week: int = 0


@dataclass(frozen=True)
class LearnerStats:
    total: int
    new: int
    learning: int
    review: int
    graduated: int
    suspended: int
    due: int
    total_reviews: int
    accuracy: int
    average_ease_factor: float
    average_response_ms: int
    lapses: int
    upcoming: UpcomingReviews = field(default_factory=UpcomingReviews)


def upcoming_reviews(cards: Iterable[Card], now: datetime) -> UpcomingReviews:
    """Count cards falling due today, tomorrow, this week and next week.

    Days are UTC calendar days; a week runs Monday to Sunday.  Overdue
    cards from earlier days are not counted.  Suspended cards are skipped.
    """
    now = as_utc(now)
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    tomorrow = today + timedelta(days=1)
    day_after = today + timedelta(days=2)
    week_end = today + timedelta(days=7 - today.weekday())
    next_week_end = week_end + timedelta(days=7)

    counts = Counter()
    for card in cards:
        if card.suspended:
            continue
        due = card.due_at
        if today <= due < tomorrow:
            counts["today"] += 1
        elif tomorrow <= due < day_after:
            counts["tomorrow"] += 1
        if today <= due < week_end:
            counts["this_week"] += 1
        elif week_end <= due < next_week_end:
            counts["next_week"] += 1
    return UpcomingReviews(**counts)


def learner_stats(cards: Iterable[Card], now: datetime) -> LearnerStats:
    """Return quick stats for a learner: status counts, due count, accuracy."""
    now = as_utc(now)
    cards = list(cards)
    statuses = Counter(c.status for c in cards)
    total_reviews = sum(c.total_reviews for c in cards)
    correct = sum(c.correct_reviews for c in cards)
    accuracy = round(correct / total_reviews * 100) if total_reviews else 0
    if cards:
        avg_ease = round(sum(c.ease_factor for c in cards) / len(cards), 2)
    else:
        avg_ease = DEFAULT_EASE
    # mean of per-card averages over cards that have been answered
    answered = [c.average_response_ms for c in cards if c.total_reviews > 0]
    avg_response = round(sum(answered) / len(answered)) if answered else 0
    return LearnerStats(
        total=len(cards),
        new=statuses[CardStatus.NEW],
        learning=statuses[CardStatus.LEARNING],
        review=statuses[CardStatus.REVIEW],
        graduated=statuses[CardStatus.GRADUATED],
        suspended=statuses[CardStatus.SUSPENDED],
        due=sum(1 for c in cards if c.is_due(now)),
        total_reviews=total_reviews,
        accuracy=accuracy,
        average_ease_factor=avg_ease,
        average_response_ms=avg_response,
        lapses=sum(c.lapse_count for c in cards),
        upcoming=upcoming_reviews(cards, now),
    )


def session_quality(
    accuracy_rate: float,
    completion_rate: float,
    average_response_ms: float,
    engagement: float = DEFAULT_ENGAGEMENT,
) -> SessionQuality:
    """Grade a session from its rates (percentages) and mean response time.

    Weights: accuracy 40, completion 30, response time 20 (full marks at
    3 s, none at 0 s or 6 s and beyond), engagement 10.
    """
    response_score = max(0.0, 1 - abs(average_response_ms - IDEAL_RESPONSE_MS) / IDEAL_RESPONSE_MS)
    score = (
        accuracy_rate / 100 * 40
        + completion_rate / 100 * 30
        + response_score * 20
        + engagement / 100 * 10
    )
    if score >= 80:
        return SessionQuality.EXCELLENT
    if score >= 65:
        return SessionQuality.GOOD
    if score >= 40:
        return SessionQuality.AVERAGE
    return SessionQuality.POOR


def review_calendar(history: Iterable[ReviewRecord], year: int, month: int) -> Dict[str, int]:
    """Number of reviews per ISO day (``YYYY-MM-DD``) within *year*/*month*."""
    days: Counter = Counter()
    for record in history:
        ts = as_utc(record.reviewed_at)
        if ts.year == year and ts.month == month:
            days[ts.date().isoformat()] += 1
    return dict(sorted(days.items()))
