"""Cache management endpoints.

- GET /cache/entries - List layer entries
- GET /cache/mounts - List mount caches
- POST /cache/prune - Evict entries and mount caches by last use
"""

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from stagecache.builds.eviction import LeastRecentlyUsedPolicy, prune_cache
from stagecache.builds.store import CacheStore
from web.deps import get_store

router = APIRouter()


class PruneRequest(BaseModel):
    """Request body for cache pruning."""

    max_entries: int | None = Field(default=None, ge=0)
    max_age_days: float | None = Field(default=None, ge=0)
    dry_run: bool = False


@router.get("/entries")
def list_entries_endpoint(
    platform: str | None = Query(None, description="Filter by platform"),
    store: CacheStore = Depends(get_store),
) -> list[dict[str, Any]]:
    """List stored layer entries.

    Args:
        platform: Filter by platform.
        store: Cache store.

    Returns:
        List of cache entries.
    """
    return [
        {
            "platform": e.platform,
            "identity": e.identity,
            "kind": e.kind,
            "size_bytes": e.size_bytes,
            "sha256": e.sha256,
            "created_at": e.created_at.isoformat(),
            "last_used_at": e.last_used_at.isoformat(),
        }
        for e in store.list_entries(platform)
    ]


@router.get("/mounts")
def list_mounts_endpoint(
    platform: str | None = Query(None, description="Filter by platform"),
    store: CacheStore = Depends(get_store),
) -> list[dict[str, Any]]:
    """List mount caches."""
    return [
        {
            "platform": m.platform,
            "name": m.name,
            "size_bytes": m.size_bytes,
            "created_at": m.created_at.isoformat(),
            "last_used_at": m.last_used_at.isoformat(),
        }
        for m in store.list_mount_caches(platform)
    ]


@router.post("/prune")
def prune_endpoint(
    request: PruneRequest,
    store: CacheStore = Depends(get_store),
) -> dict[str, Any]:
    """Evict least recently used cache content.

    Args:
        request: Prune limits.
        store: Cache store.

    Returns:
        Removed (or, for dry runs, selected) entries and mount caches.
    """
    policy = LeastRecentlyUsedPolicy(
        max_entries=request.max_entries,
        max_age=(
            timedelta(days=request.max_age_days)
            if request.max_age_days is not None
            else None
        ),
    )
    return prune_cache(store, policy, dry_run=request.dry_run).to_dict()
