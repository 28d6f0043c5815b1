"""
Database engine and session management.
Default database: data/builds.db (relative to project root), overridable
with LAUNCHPAD_DATABASE_URL.
"""
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, declarative_base

from launchpad.core.config import get_settings

# Base class for models
Base = declarative_base()

# Seconds a ledger call waits on a locked SQLite database before failing
SQLITE_BUSY_TIMEOUT = 5


def make_engine(database_url: str) -> Engine:
    """Create an engine, preparing the parent directory for SQLite files."""
    url = make_url(database_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # Pipeline tasks write from worker threads
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine) -> None:
    """Initialize database tables."""
    from launchpad.db.models import Build, BuildEvent  # noqa: F401
    Base.metadata.create_all(bind=bind)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)
