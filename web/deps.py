"""Request dependencies for the web API.

Route handlers receive the index session, the cache store and the step
executor through FastAPI dependency injection. The session factory and
store are created once by the application lifespan and kept on
``app.state``; tests replace them there.
"""

from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from stagecache.builds.executor import Executor
from stagecache.builds.service import create_executor
from stagecache.builds.store import CacheStore
from stagecache.config import get_settings


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Return the application's session factory."""
    factory: sessionmaker[Session] = request.app.state.session_factory
    return factory


def get_store(request: Request) -> CacheStore:
    """Return the application's cache store."""
    store: CacheStore = request.app.state.store
    return store


def get_executor() -> Executor:
    """Create an executor from the current settings."""
    return create_executor(get_settings())


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Yield a session scoped to one request.

    The session commits when the handler returns and rolls back when it
    raises, so handlers never commit build history themselves.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
