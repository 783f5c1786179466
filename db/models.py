"""
RecallEngine – SQLAlchemy ORM Models
=====================================
Defines the persisted schema: cards (with SM-2 fields), review logs and
session logs.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC (SQLite keeps no offset)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# CardRow – a single learner card with SM-2 scheduling metadata
# ---------------------------------------------------------------------------
class CardRow(Base):
    __tablename__ = "cards"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(128), nullable=False)
    card_id = Column(String(255), nullable=False)

    # Content
    word = Column(Text, nullable=False, default="")
    translation = Column(Text, nullable=False, default="")

    # SM-2 scheduling fields
    ease_factor = Column(Float, nullable=False, default=2.5)
    interval_days = Column(Integer, nullable=False, default=0)
    repetition_count = Column(Integer, nullable=False, default=0)
    lapse_count = Column(Integer, nullable=False, default=0)
    due_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    last_reviewed_at = Column(UTCDateTime, nullable=True)

    # Statistics
    total_reviews = Column(Integer, nullable=False, default=0)
    correct_reviews = Column(Integer, nullable=False, default=0)
    average_response_ms = Column(Float, nullable=False, default=0.0)

    suspended = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=_utcnow)

    review_logs = relationship(
        "ReviewLog", back_populates="card", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("learner_id", "card_id", name="uq_card_learner"),
        Index("ix_cards_learner_due", "learner_id", "due_at"),
    )

    def __repr__(self) -> str:
        return f"<CardRow learner={self.learner_id!r} id={self.card_id!r} due={self.due_at}>"


# ---------------------------------------------------------------------------
# ReviewLog – audit trail for every accepted outcome
# ---------------------------------------------------------------------------
class ReviewLog(Base):
    __tablename__ = "review_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    card_pk = Column(Integer, ForeignKey("cards.pk", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(64), nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    grade = Column(Integer, nullable=False)  # 0-5 (SM-2 scale)
    response_ms = Column(Integer, nullable=False, default=0)
    ease_after = Column(Float, nullable=True)
    interval_after = Column(Integer, nullable=True)

    card = relationship("CardRow", back_populates="review_logs")

    def __repr__(self) -> str:
        return f"<ReviewLog card_pk={self.card_pk} q={self.grade} at={self.reviewed_at}>"


# ---------------------------------------------------------------------------
# SessionLog – one row per finished review session
# ---------------------------------------------------------------------------
class SessionLog(Base):
    __tablename__ = "session_logs"

    id = Column(String(64), primary_key=True)
    learner_id = Column(String(128), nullable=False, index=True)
    device_id = Column(String(128), nullable=False)
    state = Column(String(16), nullable=False)  # completing / cancelled / expired
    started_at = Column(UTCDateTime, nullable=False)
    ended_at = Column(UTCDateTime, nullable=False)
    total_cards = Column(Integer, nullable=False, default=0)
    reviewed = Column(Integer, nullable=False, default=0)
    correct = Column(Integer, nullable=False, default=0)
    average_response_ms = Column(Float, nullable=False, default=0.0)
    accuracy_rate = Column(Float, nullable=False, default=0.0)  # percent
    completion_rate = Column(Float, nullable=False, default=0.0)  # percent
    quality = Column(String(16), nullable=False, default="poor")

    def __repr__(self) -> str:
        return f"<SessionLog id={self.id} learner={self.learner_id!r} state={self.state}>"
