"""
RecallEngine – Error taxonomy
==============================
Typed errors raised by the memory model, the scheduler, the card store
and the session coordinator.  Nothing here is retried automatically;
retry policy belongs to the calling layer.
"""

from __future__ import annotations


class SRSError(Exception):
    """Base class for every error raised by the engine."""

    retryable = False


# ── Input errors ─────────────────────────────────────────────────────

class InvalidGrade(SRSError, ValueError):
    """A review grade outside the 0-5 scale."""

    def __init__(self, grade) -> None:
        super().__init__(f"grade must be an integer 0-5, got {grade!r}")
        self.grade = grade


class OutOfOrderSubmission(SRSError):
    """An outcome was submitted for a card that is not at the cursor."""

    def __init__(self, card_id: str, expected_id: str | None) -> None:
        if expected_id is None:
            msg = f"card {card_id!r} submitted but the queue is exhausted"
        else:
            msg = f"card {card_id!r} submitted, expected {expected_id!r}"
        super().__init__(msg)
        self.card_id = card_id
        self.expected_id = expected_id


# ── Concurrency / lifecycle errors ───────────────────────────────────

class SessionAlreadyActive(SRSError):
    """The learner already owns an active review session."""

    def __init__(self, learner_id: str, session_id: str) -> None:
        super().__init__(
            f"learner {learner_id!r} already has active session {session_id}"
        )
        self.learner_id = learner_id
        self.session_id = session_id


class SessionNotActive(SRSError):
    """The session id is unknown, or the session has already ended."""

    def __init__(self, session_id: str, state: str | None = None) -> None:
        detail = f" (state={state})" if state else ""
        super().__init__(f"session {session_id} is not active{detail}")
        self.session_id = session_id
        self.state = state


# ── Lookup / persistence errors ──────────────────────────────────────

class CardNotFound(SRSError, KeyError):
    def __init__(self, learner_id: str, card_id: str) -> None:
        super().__init__(f"card {card_id!r} not found for learner {learner_id!r}")
        self.learner_id = learner_id
        self.card_id = card_id

    def __str__(self) -> str:
        return self.args[0]


class PersistenceError(SRSError):
    """The card store failed to load or write.  Transient by assumption."""

    retryable = True
