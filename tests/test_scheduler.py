"""
Tests for due-queue ordering and snapshots.
"""

import random
import time
from dataclasses import replace
from datetime import datetime, timedelta

from conftest import T0
from core.models import Card, new_card
from core.scheduler import Scheduler, due_queue, next_due_at


def _card(card_id, minutes=0, lapses=0):
    return Card(id=card_id, learner_id="anna", due_at=T0 + timedelta(minutes=minutes),
                lapse_count=lapses)


class TestDueQueue:
    def test_only_due_cards(self):
        cards = [_card("a", -10), _card("b", 10), _card("c", -1)]
        assert [c.id for c in due_queue(cards, T0)] == ["a", "c"]

    def test_due_exactly_now_is_included(self):
        assert [c.id for c in due_queue([_card("a", 0)], T0)] == ["a"]

    def test_most_overdue_first(self):
        cards = [_card("a", -1), _card("b", -60), _card("c", -30)]
        assert [c.id for c in due_queue(cards, T0)] == ["b", "c", "a"]

    def test_lapses_break_ties(self):
        cards = [_card("a", -5, lapses=0), _card("b", -5, lapses=3), _card("c", -5, lapses=1)]
        assert [c.id for c in due_queue(cards, T0)] == ["b", "c", "a"]

    def test_id_is_final_tie_break(self):
        cards = [_card("z", -5, 1), _card("m", -5, 1), _card("a", -5, 1)]
        assert [c.id for c in due_queue(cards, T0)] == ["a", "m", "z"]

    def test_deterministic_regardless_of_input_order(self):
        rng = random.Random(7)
        cards = [_card(f"c{i:03d}", rng.randint(-50, 5), rng.randint(0, 2)) for i in range(200)]
        first = due_queue(cards, T0)
        shuffled = cards[:]
        rng.shuffle(shuffled)
        assert due_queue(shuffled, T0) == first
        assert due_queue(cards, T0) == first

    def test_limit(self):
        cards = [_card(f"c{i}", -i) for i in range(10)]
        assert len(due_queue(cards, T0, limit=3)) == 3

    def test_empty(self):
        assert due_queue([], T0) == []

    def test_suspended_cards_skipped(self):
        cards = [_card("a", -10), replace(_card("b", -20), suspended=True)]
        assert [c.id for c in due_queue(cards, T0)] == ["a"]
        assert next_due_at(cards) == T0 - timedelta(minutes=10)

    def test_naive_due_dates_compare_with_aware_now(self):
        naive = Card(id="a", learner_id="anna", due_at=datetime(2024, 3, 1, 8, 0))
        assert due_queue([naive, _card("b", -30)], T0) == [naive, _card("b", -30)]

    def test_next_due_at(self):
        cards = [_card("a", 30), _card("b", 5), _card("c", 90)]
        assert next_due_at(cards) == T0 + timedelta(minutes=5)
        assert next_due_at([]) is None


class TestSchedulerSnapshot:
    def test_snapshot_uses_store_clock(self, memory_store, clock):
        memory_store.add_cards([_card("a", -1), _card("b", 1)])
        snap = Scheduler(memory_store).snapshot("anna")
        assert isinstance(snap, tuple)
        assert [c.id for c in snap] == ["a"]

        clock.advance(minutes=2)
        assert [c.id for c in Scheduler(memory_store).snapshot("anna")] == ["a", "b"]

    def test_snapshot_not_updated_retroactively(self, memory_store, clock):
        memory_store.add_cards([_card("a", -1)])
        snap = Scheduler(memory_store).snapshot("anna")
        memory_store.add_cards([_card("late", -30)])
        assert [c.id for c in snap] == ["a"]

    def test_other_learners_ignored(self, memory_store):
        memory_store.add_cards([_card("a", -1), Card(id="x", learner_id="ben", due_at=T0)])
        assert [c.id for c in Scheduler(memory_store).snapshot("anna")] == ["a"]

    def test_two_thousand_cards_under_a_second(self, memory_store):
        memory_store.add_cards(
            new_card("anna", f"card-{i:05d}", now=T0 - timedelta(minutes=i % 97))
            for i in range(2000)
        )
        t0 = time.perf_counter()
        snap = Scheduler(memory_store).snapshot("anna")
        assert time.perf_counter() - t0 < 1.0
        assert len(snap) == 2000
