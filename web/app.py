"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stagecache import __version__
from stagecache.builds.service import open_store
from stagecache.db import open_database
from web.routers import builds, cache, config, health


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Opens the index database and the cache store on startup and closes
    the store on shutdown.
    """
    app.state.session_factory = open_database()
    app.state.store = open_store(session_factory=app.state.session_factory)
    yield
    app.state.store.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="stagecache API",
        description="HTTP API for cache-accelerated multi-stage, "
        "multi-platform filesystem builds",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(cache.router, prefix="/cache", tags=["cache"])
    application.include_router(builds.router, prefix="/builds", tags=["builds"])

    return application


# Create the default application instance
app = create_app()
