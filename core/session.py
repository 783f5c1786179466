"""
RecallEngine – Review session coordinator
==========================================
Runs review sessions: at most one active session per learner, each holding
a fixed snapshot of the learner's due queue and a cursor into it.

    coordinator = SessionCoordinator(store)
    session = coordinator.start("learner-1").session
    card = coordinator.next_card(session.session_id)
    while card is not QUEUE_EXHAUSTED:
        coordinator.submit_outcome(session.session_id, card.id, grade=4)
        card = coordinator.next_card(session.session_id)
    coordinator.complete(session.session_id)

The registry lock and a session's own lock are never held together.  The
session lock is held for the whole of ``submit_outcome``, so idle expiry
cannot release the learner while a write is in flight.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from core.card_store import CardStore
from core.config import Settings, get_settings
from core.errors import (
    OutOfOrderSubmission,
    PersistenceError,
    SessionAlreadyActive,
    SessionNotActive,
)
from core.models import (
    Card,
    DomainEvent,
    ReviewOutcome,
    ReviewRecord,
    SessionEnded,
    SessionStarted,
    SessionState,
    SessionSummary,
)
from core.scheduler import Scheduler
from core.srs_engine import ReviewResult, review_card, validate_grade
from core.stats import session_quality

log = logging.getLogger(__name__)

DEFAULT_DEVICE = "default"


class QueueExhausted:
    """Returned by ``next_card`` once the snapshot has been worked through."""

    _instance: Optional["QueueExhausted"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "QUEUE_EXHAUSTED"


QUEUE_EXHAUSTED = QueueExhausted()


# ── Session handle ───────────────────────────────────────────────────
@dataclass(eq=False)
class ReviewSession:
    session_id: str
    learner_id: str
    device_id: str
    queue: Tuple[Card, ...]
    started_at: datetime
    last_activity_at: datetime
    cursor: int = 0
    state: SessionState = SessionState.ACTIVE
    outcomes: List[ReviewRecord] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def current_card(self) -> Optional[Card]:
        if self.cursor < len(self.queue):
            return self.queue[self.cursor]
        return None

    @property
    def reviewed(self) -> int:
        return len(self.outcomes)

    @property
    def remaining(self) -> int:
        return max(0, len(self.queue) - self.cursor)

    @property
    def correct(self) -> int:
        return sum(1 for o in self.outcomes if o.grade >= 3)


@dataclass(frozen=True)
class StartResult:
    session: ReviewSession
    events: Tuple[DomainEvent, ...] = ()


@dataclass(frozen=True)
class SessionProgress:
    total: int
    reviewed: int
    remaining: int


# =====================================================================
#  SessionCoordinator
# =====================================================================
class SessionCoordinator:
    """Owns the per-learner session registry.

    All state lives on the instance; independent coordinators (one per
    test, one per tenant) never share anything.
    """

    def __init__(
        self,
        store: CardStore,
        *,
        scheduler: Optional[Scheduler] = None,
        idle_timeout: Optional[timedelta] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._scheduler = scheduler or Scheduler(store)
        self._idle_timeout = idle_timeout or timedelta(minutes=settings.idle_timeout_minutes)
        self._registry_lock = threading.Lock()
        self._by_learner: Dict[str, ReviewSession] = {}
        self._by_id: Dict[str, ReviewSession] = {}

    @property
    def idle_timeout(self) -> timedelta:
        return self._idle_timeout

    @property
    def active_count(self) -> int:
        with self._registry_lock:
            return len(self._by_id)

    # ── lookup ───────────────────────────────────────────────────────
    def _is_idle(self, session: ReviewSession, now: datetime) -> bool:
        return now - session.last_activity_at >= self._idle_timeout

    def _get_active(self, session_id: str, now: datetime) -> ReviewSession:
        with self._registry_lock:
            session = self._by_id.get(session_id)
        if session is None:
            raise SessionNotActive(session_id)
        expired = self._is_idle(session, now) and (
            self._finish(session, SessionState.EXPIRED, now) is not None
        )
        if expired:
            raise SessionNotActive(session_id, SessionState.EXPIRED.value)
        return session

    def active_session(self, learner_id: str) -> Optional[ReviewSession]:
        """The learner's active session, or ``None`` (idle ones are expired)."""
        now = self._store.now()
        with self._registry_lock:
            session = self._by_learner.get(learner_id)
        if session is None:
            return None
        if self._is_idle(session, now):
            self._finish(session, SessionState.EXPIRED, now)
        return session if session.state is SessionState.ACTIVE else None

    # ── start ────────────────────────────────────────────────────────
    def start(self, learner_id: str, device_id: str = DEFAULT_DEVICE) -> StartResult:
        """Snapshot the learner's due queue and open a session on it.

        Raises ``SessionAlreadyActive`` if the learner already has one;
        the request is rejected, never queued.
        """
        if self.active_session(learner_id) is not None:
            self._reject(learner_id)

        now = self._store.now()
        queue = self._scheduler.snapshot(learner_id, now)
        session = ReviewSession(
            session_id=uuid.uuid4().hex,
            learner_id=learner_id,
            device_id=device_id,
            queue=queue,
            started_at=now,
            last_activity_at=now,
        )

        with self._registry_lock:
            # another device may have won the race while we were loading
            if learner_id in self._by_learner:
                existing = self._by_learner[learner_id]
            else:
                existing = None
                self._by_learner[learner_id] = session
                self._by_id[session.session_id] = session
        if existing is not None:
            self._reject(learner_id, existing)

        log.info(
            "Started session %s for learner %s on %s (%d due cards)",
            session.session_id, learner_id, device_id, len(queue),
        )
        event = SessionStarted(
            session_id=session.session_id,
            learner_id=learner_id,
            device_id=device_id,
            queue_size=len(queue),
            at=now,
        )
        return StartResult(session=session, events=(event,))

    def _reject(self, learner_id: str, existing: Optional[ReviewSession] = None):
        if existing is None:
            with self._registry_lock:
                existing = self._by_learner.get(learner_id)
        session_id = existing.session_id if existing is not None else "?"
        log.warning("Rejected start for learner %s: session %s is active", learner_id, session_id)
        raise SessionAlreadyActive(learner_id, session_id)

    # ── active state ─────────────────────────────────────────────────
    def next_card(self, session_id: str) -> Union[Card, QueueExhausted]:
        """The card at the cursor, or ``QUEUE_EXHAUSTED``."""
        now = self._store.now()
        session = self._get_active(session_id, now)
        with session.lock:
            if session.state is not SessionState.ACTIVE:
                raise SessionNotActive(session_id, session.state.value)
            session.last_activity_at = now
            card = session.current_card
        return card if card is not None else QUEUE_EXHAUSTED

    def submit_outcome(
        self,
        session_id: str,
        card_id: str,
        grade: int,
        response_ms: int = 0,
    ) -> ReviewResult:
        """Grade the card at the cursor, persist it, and advance.

        ``InvalidGrade`` / ``OutOfOrderSubmission`` change nothing.  A
        ``PersistenceError`` leaves the cursor where it was so the same
        grade can be resubmitted.
        """
        validate_grade(grade)
        now = self._store.now()
        session = self._get_active(session_id, now)

        with session.lock:
            if session.state is not SessionState.ACTIVE:
                raise SessionNotActive(session_id, session.state.value)
            current = session.current_card
            if current is None or current.id != card_id:
                log.warning(
                    "Out-of-order submission in session %s: got %s, expected %s",
                    session_id, card_id, current.id if current else None,
                )
                raise OutOfOrderSubmission(card_id, current.id if current else None)

            session.last_activity_at = now
            result = review_card(
                current, ReviewOutcome(grade=grade, recorded_at=now, response_ms=response_ms)
            )
            record = ReviewRecord(
                learner_id=session.learner_id,
                card_id=card_id,
                grade=grade,
                reviewed_at=now,
                ease_after=result.card.ease_factor,
                interval_after=result.card.interval_days,
                response_ms=response_ms,
                session_id=session_id,
            )
            self._store.save_card(result.card, record)
            session.outcomes.append(record)
            session.cursor += 1

        log.info(
            "Session %s: card %s graded %d → interval=%d ef=%.2f",
            session_id, card_id, grade, result.card.interval_days, result.card.ease_factor,
        )
        return result

    def progress(self, session_id: str) -> SessionProgress:
        session = self._get_active(session_id, self._store.now())
        with session.lock:
            return SessionProgress(
                total=len(session.queue),
                reviewed=session.reviewed,
                remaining=session.remaining,
            )

    # ── termination ──────────────────────────────────────────────────
    def complete(self, session_id: str) -> SessionSummary:
        """Learner ended the session: flush its log and release the learner."""
        now = self._store.now()
        session = self._get_active(session_id, now)
        summary = self._finish(session, SessionState.COMPLETING, now)
        if summary is None:
            raise SessionNotActive(session_id, session.state.value)
        return summary

    def cancel(self, session_id: str) -> SessionSummary:
        """Abort: unsubmitted progress is dropped, written outcomes stay."""
        now = self._store.now()
        session = self._get_active(session_id, now)
        summary = self._finish(session, SessionState.CANCELLED, now)
        if summary is None:
            raise SessionNotActive(session_id, session.state.value)
        return summary

    def expire_idle(self, now: Optional[datetime] = None) -> List[SessionSummary]:
        """Expire every session idle for at least the idle window."""
        now = now or self._store.now()
        with self._registry_lock:
            candidates = list(self._by_id.values())
        expired = []
        for session in candidates:
            if not self._is_idle(session, now):
                continue
            summary = self._finish(session, SessionState.EXPIRED, now)
            if summary is not None:
                expired.append(summary)
        return expired

    def _summarise(
        self, session: ReviewSession, state: SessionState, now: datetime
    ) -> SessionSummary:
        reviewed = session.reviewed
        correct = session.correct
        avg_ms = sum(o.response_ms for o in session.outcomes) / reviewed if reviewed else 0.0
        accuracy = correct / reviewed * 100 if reviewed else 0.0
        # an empty queue has nothing left to do
        completion = reviewed / len(session.queue) * 100 if session.queue else 100.0
        ended = SessionEnded(
            session_id=session.session_id,
            learner_id=session.learner_id,
            state=state,
            reviewed=reviewed,
            correct=correct,
            at=now,
        )
        return SessionSummary(
            session_id=session.session_id,
            learner_id=session.learner_id,
            device_id=session.device_id,
            state=state,
            started_at=session.started_at,
            ended_at=now,
            total_cards=len(session.queue),
            reviewed=reviewed,
            correct=correct,
            average_response_ms=avg_ms,
            accuracy_rate=accuracy,
            completion_rate=completion,
            quality=session_quality(accuracy, completion, avg_ms),
            events=(ended,),
        )

    def _finish(
        self, session: ReviewSession, state: SessionState, now: datetime
    ) -> Optional[SessionSummary]:
        """Move *session* to a terminal *state*, write its log and release
        its learner.

        Waits for any in-flight submission first.  Returns ``None`` if the
        session had already ended, or if it is being expired but saw
        activity after the idle check.

        If the session log cannot be written, a completed or cancelled
        session stays ACTIVE and the ``PersistenceError`` propagates so the
        call can be retried.  An expiring session is released regardless.
        """
        with session.lock:
            if session.state is not SessionState.ACTIVE:
                return None
            if state is SessionState.EXPIRED and not self._is_idle(session, now):
                return None
            session.state = state
            summary = self._summarise(session, state, now)
            try:
                self._store.record_session(summary)
            except PersistenceError:
                if state is not SessionState.EXPIRED:
                    session.state = SessionState.ACTIVE
                    raise
                log.exception(
                    "Session log for expired session %s was not written", session.session_id
                )

        with self._registry_lock:
            if self._by_learner.get(session.learner_id) is session:
                del self._by_learner[session.learner_id]
            self._by_id.pop(session.session_id, None)

        log.info(
            "Session %s for learner %s ended (%s): %d/%d reviewed, quality %s",
            session.session_id, session.learner_id, state.value,
            summary.reviewed, summary.total_cards, summary.quality.value,
        )
        return summary
