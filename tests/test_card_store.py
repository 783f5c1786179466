"""
Tests for the card store implementations (both run the same contract).
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import T0
from core.errors import CardNotFound, PersistenceError
from core.models import (
    Card,
    CardStatus,
    ReviewRecord,
    SessionQuality,
    SessionState,
    SessionSummary,
    new_card,
)
from core.scheduler import Scheduler


def _reviewed_card():
    return Card(
        id="haus", learner_id="anna", due_at=T0 + timedelta(days=6),
        ease_factor=2.36, interval_days=6, repetition_count=2, lapse_count=1,
        last_reviewed_at=T0, word="das Haus", translation="house",
        total_reviews=3, correct_reviews=2, average_response_ms=1733.5,
        created_at=T0 - timedelta(days=10),
    )


class TestCardStoreContract:
    def test_save_load_round_trip(self, store):
        card = _reviewed_card()
        store.save_card(card)
        assert store.load_cards("anna") == [card]
        assert store.get_card("anna", "haus") == card

    def test_save_replaces_existing(self, store):
        store.save_card(new_card("anna", "haus", now=T0))
        updated = _reviewed_card()
        store.save_card(updated)
        assert store.load_cards("anna") == [updated]

    def test_learners_are_isolated(self, store):
        store.add_cards([new_card("anna", "haus", now=T0), new_card("ben", "haus", now=T0)])
        assert [c.learner_id for c in store.load_cards("anna")] == ["anna"]
        assert store.load_cards("nobody") == []

    def test_get_missing_card(self, store):
        with pytest.raises(CardNotFound):
            store.get_card("anna", "nope")

    def test_now_uses_injected_clock(self, store, clock):
        assert store.now() == T0
        clock.advance(hours=1)
        assert store.now() == T0 + timedelta(hours=1)

    def test_review_history_written_with_card(self, store):
        store.add_cards([new_card("anna", "haus", now=T0), new_card("anna", "hund", now=T0)])
        for i, cid in enumerate(["haus", "hund", "haus"]):
            record = ReviewRecord(
                learner_id="anna", card_id=cid, grade=4,
                reviewed_at=T0 + timedelta(minutes=i), ease_after=2.5, interval_after=1,
                session_id="s1",
            )
            store.save_card(store.get_card("anna", cid), record)

        history = store.review_history("anna")
        assert [r.card_id for r in history] == ["haus", "hund", "haus"]
        assert [r.card_id for r in store.review_history("anna", "hund")] == ["hund"]
        assert history[0].reviewed_at == T0

    def test_record_and_list_sessions(self, store):
        summary = SessionSummary(
            session_id="s1", learner_id="anna", device_id="phone",
            state=SessionState.COMPLETING, started_at=T0,
            ended_at=T0 + timedelta(minutes=5), total_cards=3, reviewed=2, correct=1,
            average_response_ms=1200.0, accuracy_rate=50.0, completion_rate=66.7,
            quality=SessionQuality.AVERAGE,
        )
        store.record_session(summary)
        assert store.session_history("anna") == [summary]
        assert store.session_history("ben") == []

    def test_reset_progress(self, store, clock):
        store.save_card(_reviewed_card(), ReviewRecord(
            learner_id="anna", card_id="haus", grade=5, reviewed_at=T0,
            ease_after=2.36, interval_after=6,
        ))
        clock.advance(days=1)

        assert store.reset_progress("anna") == 1
        card = store.get_card("anna", "haus")
        assert card.ease_factor == 2.5
        assert card.interval_days == 0
        assert card.repetition_count == 0
        assert card.last_reviewed_at is None
        assert card.due_at == T0 + timedelta(days=1)
        assert card.word == "das Haus"
        assert store.review_history("anna") == []

    def test_suspend_and_resume(self, store):
        store.add_cards([new_card("anna", "haus", now=T0), new_card("anna", "hund", now=T0)])
        card = store.set_suspended("anna", "haus")
        assert card.status is CardStatus.SUSPENDED
        assert store.get_card("anna", "haus").suspended
        assert [c.id for c in Scheduler(store).snapshot("anna")] == ["hund"]

        store.set_suspended("anna", "haus", suspended=False)
        assert [c.id for c in Scheduler(store).snapshot("anna")] == ["haus", "hund"]

    def test_suspend_unknown_card(self, store):
        with pytest.raises(CardNotFound):
            store.set_suspended("anna", "missing")


class TestSqlCardStoreFailures:
    def test_save_failure_is_persistence_error(self, sql_store):
        with patch.object(
            sql_store._session_factory.class_, "commit",
            side_effect=OperationalError("UPDATE", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(PersistenceError) as excinfo:
                sql_store.save_card(_reviewed_card())
        assert excinfo.value.retryable
        assert sql_store.load_cards("anna") == []

    def test_duplicate_add_rolls_back(self, sql_store):
        sql_store.add_cards([new_card("anna", "haus", now=T0)])
        with pytest.raises(PersistenceError):
            sql_store.add_cards([new_card("anna", "hund", now=T0), new_card("anna", "haus", now=T0)])
        assert [c.id for c in sql_store.load_cards("anna")] == ["haus"]


class TestInMemoryCardStore:
    def test_duplicate_add_rejected(self, memory_store):
        memory_store.add_cards([new_card("anna", "haus", now=T0)])
        with pytest.raises(PersistenceError):
            memory_store.add_cards([new_card("anna", "haus", now=T0)])

    def test_duplicate_in_batch_adds_nothing(self, memory_store):
        with pytest.raises(PersistenceError):
            memory_store.add_cards([new_card("anna", "hund", now=T0), new_card("anna", "hund", now=T0)])
        assert memory_store.load_cards("anna") == []
