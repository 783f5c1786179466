"""
Shared fixtures: a controllable clock and card stores backed by memory
and by an in-memory SQLite database.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.card_store import InMemoryCardStore, SqlCardStore
from core.config import Settings
from db.database import create_db_engine, init_db, make_session_factory

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite:///:memory:", idle_timeout_minutes=30)


@pytest.fixture
def memory_store(clock):
    return InMemoryCardStore(clock=clock)


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory, clock):
    return SqlCardStore(session_factory, clock=clock)


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    if request.param == "memory":
        return InMemoryCardStore(clock=clock)
    return request.getfixturevalue("sql_store")
