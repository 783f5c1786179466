"""
RecallEngine – Database engine & session management
====================================================
Builds SQLAlchemy engines and session factories.  Nothing is created at
import time; callers pass the resulting factory to ``SqlCardStore``.
"""

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key enforcement for every SQLite connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine for *database_url*.

    SQLite files get their parent directory created; ``sqlite:///:memory:``
    shares one connection across threads so every session sees the same data.
    """
    url = make_url(database_url)
    kwargs = {"echo": echo}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, **kwargs)
    if url.get_backend_name() == "sqlite":
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables if they do not exist yet."""
    Base.metadata.create_all(bind=engine)
