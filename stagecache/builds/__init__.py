"""Build engine module.

This module handles:
- Step identity computation
- Layer snapshots, deltas and archives
- The platform-namespaced cache store and eviction
- Step execution
- Per-platform planning and multi-platform scheduling
- Build history records
"""

from stagecache.builds.models import (
    BuildRecord,
    CacheEntryRecord,
    MountCacheRecord,
    StepRecord,
)

__all__ = ["BuildRecord", "CacheEntryRecord", "MountCacheRecord", "StepRecord"]

# Submodules are imported explicitly (stagecache.builds.planner, etc.)
