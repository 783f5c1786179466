"""
RecallEngine – Due-queue scheduler
===================================
Builds the ordered review queue for a learner.  The scheduler only reads
``due_at`` / ``lapse_count`` / ``id`` / ``suspended``; it never mutates card state.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from core.models import Card, as_utc

log = logging.getLogger(__name__)


def _priority(card: Card):
    # most overdue first, then struggling cards, then id for determinism
    return (card.due_at, -card.lapse_count, card.id)


def due_queue(
    cards: Iterable[Card], now: datetime, *, limit: Optional[int] = None
) -> List[Card]:
    """Return the unsuspended cards with ``due_at <= now`` in review order."""
    now = as_utc(now)
    due = sorted((c for c in cards if c.is_due(now)), key=_priority)
    if limit is not None:
        due = due[:limit]
    return due


def next_due_at(cards: Iterable[Card]) -> Optional[datetime]:
    """Earliest ``due_at`` among unsuspended *cards*, or ``None`` if there are none."""
    return min((c.due_at for c in cards if not c.suspended), default=None)


class Scheduler:
    """Snapshots a learner's due queue from a card store."""

    def __init__(self, store) -> None:
        self._store = store

    def snapshot(
        self,
        learner_id: str,
        now: datetime | None = None,
        *,
        limit: Optional[int] = None,
    ) -> Tuple[Card, ...]:
        """Load *learner_id*'s cards and return the due queue as a tuple.

        The tuple is fixed at call time; cards that fall due later are
        picked up by the next call.
        """
        if now is None:
            now = self._store.now()
        cards = self._store.load_cards(learner_id)
        queue = tuple(due_queue(cards, now, limit=limit))
        log.info(
            "Found %d due cards (of %d) for learner %s", len(queue), len(cards), learner_id
        )
        return queue
