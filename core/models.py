"""
RecallEngine – Domain types
============================
Immutable value objects shared by the memory model, scheduler, card store
and session coordinator: cards, review outcomes, review/session records and
the domain events returned alongside results.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Tuple

from core.errors import InvalidGrade

DEFAULT_EASE = 2.5
MIN_EASE = 1.3
REVIEW_INTERVAL_DAYS = 21
GRADUATION_INTERVAL_DAYS = 120

# Answer buttons → SM-2 grade
ASSESSMENT_GRADES = {
    "forgot": 0,
    "hard": 3,
    "good": 4,
    "easy": 5,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise *value* to an aware UTC datetime (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_ts(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


class CardStatus(str, enum.Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    GRADUATED = "graduated"
    SUSPENDED = "suspended"


class SessionQuality(str, enum.Enum):
    POOR = "poor"
    AVERAGE = "average"
    GOOD = "good"
    EXCELLENT = "excellent"


class SessionState(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETING = "completing"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Card – one per (learner, vocabulary item)
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Card:
    id: str
    learner_id: str
    due_at: datetime

    # SM-2 memory state
    ease_factor: float = DEFAULT_EASE
    interval_days: int = 0
    repetition_count: int = 0
    lapse_count: int = 0
    last_reviewed_at: datetime | None = None

    # Content
    word: str = ""
    translation: str = ""

    # Review statistics
    total_reviews: int = 0
    correct_reviews: int = 0
    average_response_ms: float = 0.0
    created_at: datetime | None = None

    # Suspended cards are kept but never scheduled
    suspended: bool = False

    def __post_init__(self) -> None:
        for key in ("due_at", "last_reviewed_at", "created_at"):
            object.__setattr__(self, key, as_utc(getattr(self, key)))

    @property
    def status(self) -> CardStatus:
        if self.suspended:
            return CardStatus.SUSPENDED
        if self.last_reviewed_at is None and self.total_reviews == 0:
            return CardStatus.NEW
        if self.interval_days >= GRADUATION_INTERVAL_DAYS:
            return CardStatus.GRADUATED
        if self.interval_days >= REVIEW_INTERVAL_DAYS:
            return CardStatus.REVIEW
        return CardStatus.LEARNING

    def is_due(self, now: datetime) -> bool:
        """Scheduled for review at *now* (suspended cards never are)."""
        return not self.suspended and self.due_at <= as_utc(now)

    def to_dict(self) -> dict:
        """Plain-scalar form with ISO-8601 timestamps (JSON friendly)."""
        data = asdict(self)
        for key in ("due_at", "last_reviewed_at", "created_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Card":
        data = dict(data)
        for key in ("due_at", "last_reviewed_at", "created_at"):
            data[key] = _parse_ts(data.get(key))
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"<Card id={self.id!r} learner={self.learner_id!r} "
            f"ef={self.ease_factor:.2f} interval={self.interval_days} due={self.due_at}>"
        )


def new_card(
    learner_id: str,
    card_id: str,
    *,
    word: str = "",
    translation: str = "",
    now: datetime | None = None,
) -> Card:
    """Return an unseen card, due immediately."""
    now = as_utc(now) or utcnow()
    return Card(
        id=card_id,
        learner_id=learner_id,
        due_at=now,
        word=word,
        translation=translation,
        created_at=now,
    )


# ---------------------------------------------------------------------------
# Review outcome & records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ReviewOutcome:
    grade: int
    recorded_at: datetime
    response_ms: int = 0

    @property
    def is_success(self) -> bool:
        return self.grade >= 3

    @classmethod
    def from_assessment(
        cls, assessment: str, recorded_at: datetime, response_ms: int = 0
    ) -> "ReviewOutcome":
        try:
            grade = ASSESSMENT_GRADES[assessment.lower()]
        except (KeyError, AttributeError):
            raise InvalidGrade(assessment) from None
        return cls(grade=grade, recorded_at=recorded_at, response_ms=response_ms)


@dataclass(frozen=True)
class ReviewRecord:
    """Audit entry for one accepted review."""
    learner_id: str
    card_id: str
    grade: int
    reviewed_at: datetime
    ease_after: float
    interval_after: int
    response_ms: int = 0
    session_id: str | None = None


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    learner_id: str
    device_id: str
    state: SessionState
    started_at: datetime
    ended_at: datetime
    total_cards: int
    reviewed: int
    correct: int
    average_response_ms: float = 0.0
    accuracy_rate: float = 0.0
    completion_rate: float = 0.0
    quality: SessionQuality = SessionQuality.POOR
    events: Tuple["DomainEvent", ...] = field(default=(), compare=False)


# ---------------------------------------------------------------------------
# Domain events – consumed by an external telemetry collaborator
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DomainEvent:
    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class SessionStarted(DomainEvent):
    session_id: str
    learner_id: str
    device_id: str
    queue_size: int
    at: datetime


@dataclass(frozen=True)
class CardReviewed(DomainEvent):
    learner_id: str
    card_id: str
    grade: int
    ease_factor: float
    interval_days: int
    due_at: datetime
    at: datetime


@dataclass(frozen=True)
class CardLapsed(DomainEvent):
    learner_id: str
    card_id: str
    lapse_count: int
    at: datetime


@dataclass(frozen=True)
class CardGraduated(DomainEvent):
    learner_id: str
    card_id: str
    interval_days: int
    at: datetime


@dataclass(frozen=True)
class SessionEnded(DomainEvent):
    session_id: str
    learner_id: str
    state: SessionState
    reviewed: int
    correct: int
    at: datetime
