"""FastAPI web application for stagecache.

This module provides the HTTP API that mirrors the core services.
All business logic is delegated to core modules in stagecache/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
