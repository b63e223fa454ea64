"""Health and service information endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stagecache import __version__
from stagecache.builds.store import CacheStore
from web.deps import get_db, get_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health(response: Response, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Report whether the index database answers queries.

    Returns 503 with ``status: "degraded"`` when the database is
    unreachable.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Health check failed: %s", e)
        database = "error"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": __version__,
        "database": database,
    }


@router.get("/")
def root(store: CacheStore = Depends(get_store)) -> dict[str, Any]:
    """API name, version and the cache store in use."""
    return {
        "name": "stagecache API",
        "version": __version__,
        "store": repr(store),
    }
