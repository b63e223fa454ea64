"""Shared pytest fixtures."""

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stagecache.builds import models  # noqa: F401
from stagecache.db import Base


@pytest.fixture
def engine(tmp_path: Path):
    """Create a SQLite engine backed by a file in tmp_path.

    A file database is shared by every connection, which the cache
    store needs since it is used from worker threads.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def context_dir(tmp_path: Path) -> Path:
    """Create a build context with a manifest and a source file."""
    root = tmp_path / "context"
    root.mkdir()
    (root / "manifest").write_text("requests==2.31\n")
    (root / "source").write_text("print('hello')\n")
    return root
