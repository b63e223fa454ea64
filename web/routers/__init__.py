"""Router modules for FastAPI web API."""

from web.routers import builds, cache, config, health

__all__ = ["builds", "cache", "config", "health"]
