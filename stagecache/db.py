"""SQLAlchemy setup for the cache index and build history.

The cache store updates its index from executor worker threads while the
build service records outcomes from the event loop thread, so SQLite
connections are opened without thread affinity and with a busy timeout.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stagecache.config import get_settings

SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """Declarative base for stagecache tables."""

    pass


def _sqlite_file(db_url: str) -> Path | None:
    path = db_url.removeprefix("sqlite:///")
    if path == db_url or not path or path == ":memory:":
        return None
    return Path(path)


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the index database.

    For SQLite files the parent directory is created and every connection
    gets a busy timeout and WAL journaling.

    Args:
        db_url: Database URL. Defaults to ``settings.db_url``.

    Returns:
        SQLAlchemy Engine.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, echo=False)

    db_file = _sqlite_file(db_url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        echo=False,
    )
    event.listen(engine, "connect", _configure_sqlite)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to ``engine``.

    Objects stay usable after commit, since build results are read back
    after their records are committed.
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the index and history tables if they do not exist."""
    from stagecache.builds import models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def open_database(db_url: str | None = None) -> sessionmaker[Session]:
    """Create the engine, ensure tables exist and return a session factory.

    Args:
        db_url: Database URL. Defaults to ``settings.db_url``.

    Returns:
        Session factory for the initialized database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error.

    Args:
        session_factory: Factory to use. Defaults to one built from settings.

    Yields:
        SQLAlchemy Session.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_database",
]
