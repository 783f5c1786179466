"""
RecallEngine – Card store
==========================
The card store owns persisted card state.  ``CardStore`` is the port the
scheduler and session coordinator depend on; ``SqlCardStore`` implements it
over the SQLAlchemy schema in ``db.models`` and ``InMemoryCardStore`` keeps
everything in process memory (tests, stress runs).

Every write is atomic per card: a card and its review-log entry are
committed together or not at all.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core.errors import CardNotFound, PersistenceError
from core.models import (
    DEFAULT_EASE,
    Card,
    ReviewRecord,
    SessionQuality,
    SessionState,
    SessionSummary,
    as_utc,
    utcnow,
)
from db.models import CardRow, ReviewLog, SessionLog

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class CardStore(ABC):
    """Port for loading and persisting learner cards."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow

    def now(self) -> datetime:
        """Current time; injectable through the ``clock`` argument."""
        return as_utc(self._clock())

    @abstractmethod
    def load_cards(self, learner_id: str) -> List[Card]:
        """Return every card owned by *learner_id* (any order)."""

    @abstractmethod
    def get_card(self, learner_id: str, card_id: str) -> Card:
        """Return one card or raise ``CardNotFound``."""

    @abstractmethod
    def save_card(self, card: Card, review: Optional[ReviewRecord] = None) -> None:
        """Insert or replace *card*, atomically with *review* when given.

        Raises ``PersistenceError`` on failure; nothing is written then.
        """

    @abstractmethod
    def add_cards(self, cards: Iterable[Card]) -> int:
        """Insert new cards; returns the number inserted."""

    @abstractmethod
    def record_session(self, summary: SessionSummary) -> None:
        """Persist the log of a finished session."""

    @abstractmethod
    def session_history(self, learner_id: Optional[str] = None) -> List[SessionSummary]:
        """Logs of finished sessions, optionally for one learner."""

    @abstractmethod
    def review_history(
        self, learner_id: str, card_id: Optional[str] = None
    ) -> List[ReviewRecord]:
        """Review records for a learner (or one card), oldest first."""

    @abstractmethod
    def reset_progress(self, learner_id: str) -> int:
        """Reset SM-2 state for all of a learner's cards and drop their review
        history.  Returns the number of cards reset."""

    def set_suspended(self, learner_id: str, card_id: str, suspended: bool = True) -> Card:
        """Suspend (or resume) one card; its SM-2 state is left untouched."""
        card = replace(self.get_card(learner_id, card_id), suspended=suspended)
        self.save_card(card)
        log.info(
            "Card %s for learner %s %s", card_id, learner_id,
            "suspended" if suspended else "resumed",
        )
        return card


def _reset(card: Card, now: datetime) -> Card:
    return replace(
        card,
        ease_factor=DEFAULT_EASE,
        interval_days=0,
        repetition_count=0,
        lapse_count=0,
        last_reviewed_at=None,
        due_at=now,
        total_reviews=0,
        correct_reviews=0,
        average_response_ms=0.0,
    )


# ── In-memory implementation ──────────────────────────────────────────

class InMemoryCardStore(CardStore):
    """Dict-backed store; all access goes through one lock."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        super().__init__(clock)
        self._lock = threading.Lock()
        self._cards: Dict[str, Dict[str, Card]] = {}
        self._reviews: List[ReviewRecord] = []
        self._sessions: List[SessionSummary] = []

    def load_cards(self, learner_id: str) -> List[Card]:
        with self._lock:
            return list(self._cards.get(learner_id, {}).values())

    def get_card(self, learner_id: str, card_id: str) -> Card:
        with self._lock:
            try:
                return self._cards[learner_id][card_id]
            except KeyError:
                raise CardNotFound(learner_id, card_id) from None

    def save_card(self, card: Card, review: Optional[ReviewRecord] = None) -> None:
        with self._lock:
            self._cards.setdefault(card.learner_id, {})[card.id] = card
            if review is not None:
                self._reviews.append(review)

    def add_cards(self, cards: Iterable[Card]) -> int:
        cards = list(cards)
        with self._lock:
            seen = set()
            for card in cards:
                key = (card.learner_id, card.id)
                if key in seen or card.id in self._cards.get(card.learner_id, {}):
                    raise PersistenceError(
                        f"card {card.id!r} already exists for learner {card.learner_id!r}"
                    )
                seen.add(key)
            for card in cards:
                self._cards.setdefault(card.learner_id, {})[card.id] = card
        return len(cards)

    def record_session(self, summary: SessionSummary) -> None:
        with self._lock:
            self._sessions.append(summary)

    def session_history(self, learner_id: Optional[str] = None) -> List[SessionSummary]:
        with self._lock:
            return [s for s in self._sessions if learner_id in (None, s.learner_id)]

    def review_history(
        self, learner_id: str, card_id: Optional[str] = None
    ) -> List[ReviewRecord]:
        with self._lock:
            records = [
                r for r in self._reviews
                if r.learner_id == learner_id and card_id in (None, r.card_id)
            ]
        return sorted(records, key=lambda r: r.reviewed_at)

    def reset_progress(self, learner_id: str) -> int:
        now = self.now()
        with self._lock:
            owned = self._cards.get(learner_id, {})
            for card_id, card in owned.items():
                owned[card_id] = _reset(card, now)
            self._reviews = [r for r in self._reviews if r.learner_id != learner_id]
            return len(owned)


# ── SQLAlchemy implementation ─────────────────────────────────────────

def _row_to_card(row: CardRow) -> Card:
    return Card(
        id=row.card_id,
        learner_id=row.learner_id,
        due_at=row.due_at,
        ease_factor=row.ease_factor,
        interval_days=row.interval_days,
        repetition_count=row.repetition_count,
        lapse_count=row.lapse_count,
        last_reviewed_at=row.last_reviewed_at,
        word=row.word,
        translation=row.translation,
        total_reviews=row.total_reviews,
        correct_reviews=row.correct_reviews,
        average_response_ms=row.average_response_ms,
        created_at=row.created_at,
        suspended=bool(row.suspended),
    )


def _apply_card(row: CardRow, card: Card) -> None:
    row.learner_id = card.learner_id
    row.card_id = card.id
    row.word = card.word
    row.translation = card.translation
    row.ease_factor = card.ease_factor
    row.interval_days = card.interval_days
    row.repetition_count = card.repetition_count
    row.lapse_count = card.lapse_count
    row.due_at = card.due_at
    row.last_reviewed_at = card.last_reviewed_at
    row.total_reviews = card.total_reviews
    row.correct_reviews = card.correct_reviews
    row.average_response_ms = card.average_response_ms
    row.created_at = card.created_at
    row.suspended = card.suspended


class SqlCardStore(CardStore):
    """Card store over a SQLAlchemy session factory.

    Each call opens its own ORM session and closes it before returning.
    Writes are serialised with a lock so SQLite never sees two writers.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None) -> None:
        super().__init__(clock)
        self._session_factory = session_factory
        self._write_lock = threading.Lock()

    def _find(self, s: Session, learner_id: str, card_id: str) -> Optional[CardRow]:
        return s.execute(
            select(CardRow).where(CardRow.learner_id == learner_id, CardRow.card_id == card_id)
        ).scalar_one_or_none()

    def load_cards(self, learner_id: str) -> List[Card]:
        s = self._session_factory()
        try:
            rows = s.execute(
                select(CardRow).where(CardRow.learner_id == learner_id)
            ).scalars().all()
            cards = [_row_to_card(r) for r in rows]
        except SQLAlchemyError as exc:
            log.warning("Loading cards for learner %s failed: %s", learner_id, exc)
            raise PersistenceError(f"could not load cards for {learner_id!r}") from exc
        finally:
            s.close()
        log.debug("Loaded %d cards for learner %s", len(cards), learner_id)
        return cards

    def get_card(self, learner_id: str, card_id: str) -> Card:
        s = self._session_factory()
        try:
            row = self._find(s, learner_id, card_id)
            card = _row_to_card(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not load card {card_id!r}") from exc
        finally:
            s.close()
        if card is None:
            raise CardNotFound(learner_id, card_id)
        return card

    def save_card(self, card: Card, review: Optional[ReviewRecord] = None) -> None:
        with self._write_lock:
            s = self._session_factory()
            try:
                row = self._find(s, card.learner_id, card.id)
                if row is None:
                    row = CardRow()
                    s.add(row)
                _apply_card(row, card)
                if review is not None:
                    s.add(
                        ReviewLog(
                            card=row,
                            session_id=review.session_id,
                            reviewed_at=review.reviewed_at,
                            grade=review.grade,
                            response_ms=review.response_ms,
                            ease_after=review.ease_after,
                            interval_after=review.interval_after,
                        )
                    )
                s.commit()
            except SQLAlchemyError as exc:
                s.rollback()
                log.warning("Saving card %s for learner %s failed: %s", card.id, card.learner_id, exc)
                raise PersistenceError(f"could not save card {card.id!r}") from exc
            finally:
                s.close()

    def add_cards(self, cards: Iterable[Card]) -> int:
        with self._write_lock:
            s = self._session_factory()
            try:
                count = 0
                for card in cards:
                    row = CardRow()
                    _apply_card(row, card)
                    s.add(row)
                    count += 1
                s.commit()
            except SQLAlchemyError as exc:
                s.rollback()
                raise PersistenceError("could not add cards") from exc
            finally:
                s.close()
        log.info("Added %d cards", count)
        return count

    def record_session(self, summary: SessionSummary) -> None:
        with self._write_lock:
            s = self._session_factory()
            try:
                s.add(
                    SessionLog(
                        id=summary.session_id,
                        learner_id=summary.learner_id,
                        device_id=summary.device_id,
                        state=summary.state.value,
                        started_at=summary.started_at,
                        ended_at=summary.ended_at,
                        total_cards=summary.total_cards,
                        reviewed=summary.reviewed,
                        correct=summary.correct,
                        average_response_ms=summary.average_response_ms,
                        accuracy_rate=summary.accuracy_rate,
                        completion_rate=summary.completion_rate,
                        quality=summary.quality.value,
                    )
                )
                s.commit()
            except SQLAlchemyError as exc:
                s.rollback()
                raise PersistenceError(f"could not record session {summary.session_id}") from exc
            finally:
                s.close()

    def review_history(
        self, learner_id: str, card_id: Optional[str] = None
    ) -> List[ReviewRecord]:
        s = self._session_factory()
        try:
            q = (
                select(ReviewLog, CardRow.card_id)
                .join(CardRow, ReviewLog.card_pk == CardRow.pk)
                .where(CardRow.learner_id == learner_id)
                .order_by(ReviewLog.reviewed_at, ReviewLog.id)
            )
            if card_id is not None:
                q = q.where(CardRow.card_id == card_id)
            rows: List[Tuple[ReviewLog, str]] = s.execute(q).all()
            return [
                ReviewRecord(
                    learner_id=learner_id,
                    card_id=cid,
                    grade=entry.grade,
                    reviewed_at=entry.reviewed_at,
                    ease_after=entry.ease_after,
                    interval_after=entry.interval_after,
                    response_ms=entry.response_ms,
                    session_id=entry.session_id,
                )
                for entry, cid in rows
            ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not load review history for {learner_id!r}") from exc
        finally:
            s.close()

    def session_history(self, learner_id: Optional[str] = None) -> List[SessionSummary]:
        s = self._session_factory()
        try:
            q = select(SessionLog).order_by(SessionLog.started_at)
            if learner_id is not None:
                q = q.where(SessionLog.learner_id == learner_id)
            return [
                SessionSummary(
                    session_id=row.id,
                    learner_id=row.learner_id,
                    device_id=row.device_id,
                    state=SessionState(row.state),
                    started_at=row.started_at,
                    ended_at=row.ended_at,
                    total_cards=row.total_cards,
                    reviewed=row.reviewed,
                    correct=row.correct,
                    average_response_ms=row.average_response_ms,
                    accuracy_rate=row.accuracy_rate,
                    completion_rate=row.completion_rate,
                    quality=SessionQuality(row.quality),
                )
                for row in s.execute(q).scalars().all()
            ]
        except SQLAlchemyError as exc:
            raise PersistenceError("could not load session logs") from exc
        finally:
            s.close()

    def reset_progress(self, learner_id: str) -> int:
        now = self.now()
        with self._write_lock:
            s = self._session_factory()
            try:
                rows = s.execute(
                    select(CardRow).where(CardRow.learner_id == learner_id)
                ).scalars().all()
                for row in rows:
                    _apply_card(row, _reset(_row_to_card(row), now))
                pks = [r.pk for r in rows]
                if pks:
                    s.query(ReviewLog).filter(ReviewLog.card_pk.in_(pks)).delete(
                        synchronize_session="fetch"
                    )
                s.commit()
            except SQLAlchemyError as exc:
                s.rollback()
                raise PersistenceError(f"could not reset progress for {learner_id!r}") from exc
            finally:
                s.close()
        log.info("Reset progress for learner %s (%d cards)", learner_id, len(rows))
        return len(rows)
