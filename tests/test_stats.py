"""
Tests for learner statistics, the review forecast, session quality and the
review calendar.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0
from core.models import Card, ReviewRecord, SessionQuality, new_card
from core.stats import learner_stats, review_calendar, session_quality, upcoming_reviews


def _due(card_id, due_at):
    return Card(id=card_id, learner_id="anna", due_at=due_at)


class TestLearnerStats:
    def test_empty(self):
        stats = learner_stats([], T0)
        assert stats.total == 0
        assert stats.accuracy == 0
        assert stats.average_ease_factor == 2.5
        assert stats.average_response_ms == 0

    def test_counts(self):
        cards = [
            new_card("anna", "a", now=T0),
            Card(id="b", learner_id="anna", due_at=T0 + timedelta(days=1), ease_factor=2.0,
                 interval_days=1, last_reviewed_at=T0, total_reviews=3, correct_reviews=2,
                 lapse_count=1, average_response_ms=2000.0),
            Card(id="c", learner_id="anna", due_at=T0 - timedelta(days=1), ease_factor=2.8,
                 interval_days=30, last_reviewed_at=T0 - timedelta(days=31),
                 total_reviews=5, correct_reviews=5, average_response_ms=1000.0),
        ]
        stats = learner_stats(cards, T0)
        assert (stats.total, stats.new, stats.learning, stats.review) == (3, 1, 1, 1)
        assert (stats.graduated, stats.suspended) == (0, 0)
        assert stats.due == 2
        assert stats.total_reviews == 8
        assert stats.accuracy == 88  # 7 / 8
        assert stats.average_ease_factor == 2.43
        assert stats.average_response_ms == 1500
        assert stats.lapses == 1

    def test_graduated_and_suspended(self):
        reviewed = Card(id="g", learner_id="anna", due_at=T0 - timedelta(days=1),
                        interval_days=150, last_reviewed_at=T0 - timedelta(days=151),
                        total_reviews=6, correct_reviews=6)
        cards = [reviewed, replace(new_card("anna", "s", now=T0), suspended=True)]
        stats = learner_stats(cards, T0)
        assert (stats.graduated, stats.suspended) == (1, 1)
        assert stats.due == 1


class TestUpcomingReviews:
    # T0 is Friday 2024-03-01 09:00 UTC
    def test_forecast_windows(self):
        cards = [
            _due("earlier", T0 - timedelta(days=1)),
            _due("today", T0 + timedelta(hours=5)),
            _due("tomorrow", datetime(2024, 3, 2, 23, 0, tzinfo=timezone.utc)),
            _due("sunday", datetime(2024, 3, 3, 12, 0, tzinfo=timezone.utc)),
            _due("monday", datetime(2024, 3, 4, 0, 0, tzinfo=timezone.utc)),
            _due("next-sunday", datetime(2024, 3, 10, 23, 59, tzinfo=timezone.utc)),
            _due("later", datetime(2024, 3, 11, 0, 0, tzinfo=timezone.utc)),
        ]
        upcoming = upcoming_reviews(cards, T0)
        assert upcoming.today == 1
        assert upcoming.tomorrow == 1
        assert upcoming.this_week == 3
        assert upcoming.next_week == 2

    def test_suspended_cards_not_forecast(self):
        card = replace(_due("a", T0 + timedelta(hours=1)), suspended=True)
        assert upcoming_reviews([card], T0).today == 0

    def test_included_in_learner_stats(self):
        stats = learner_stats([_due("a", T0 + timedelta(days=1))], T0)
        assert stats.upcoming.tomorrow == 1


class TestSessionQuality:
    @pytest.mark.parametrize(
        "accuracy, completion, response_ms, expected",
        [
            (100.0, 100.0, 3000.0, SessionQuality.EXCELLENT),  # 40 + 30 + 20 + 5
            (100.0, 100.0, 0.0, SessionQuality.GOOD),  # 40 + 30 + 0 + 5
            (50.0, 50.0, 3000.0, SessionQuality.AVERAGE),  # 20 + 15 + 20 + 5
            (0.0, 10.0, 9000.0, SessionQuality.POOR),  # 0 + 3 + 0 + 5
        ],
    )
    def test_grades(self, accuracy, completion, response_ms, expected):
        assert session_quality(accuracy, completion, response_ms) is expected

    def test_engagement_weight(self):
        assert session_quality(100.0, 100.0, 0.0, engagement=100.0) is SessionQuality.EXCELLENT


class TestReviewCalendar:
    def test_counts_per_day_within_month(self):
        def rec(ts):
            return ReviewRecord(learner_id="anna", card_id="a", grade=4, reviewed_at=ts,
                                ease_after=2.5, interval_after=1)

        history = [
            rec(datetime(2024, 3, 1, 8, tzinfo=timezone.utc)),
            rec(datetime(2024, 3, 1, 20, tzinfo=timezone.utc)),
            rec(datetime(2024, 3, 15, 9, tzinfo=timezone.utc)),
            rec(datetime(2024, 4, 1, 9, tzinfo=timezone.utc)),
        ]
        assert review_calendar(history, 2024, 3) == {"2024-03-01": 2, "2024-03-15": 1}
        assert review_calendar(history, 2024, 5) == {}
