"""Cache eviction.

Eviction is never automatic. A policy selects layer entries and mount
caches to drop from the recorded last-used timestamps, and
:func:`prune_cache` applies (or previews) that selection.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagecache.builds.store import CacheStore
    from stagecache.types import CacheEntryInfo, MountCacheInfo

logger = logging.getLogger(__name__)


class EvictionPolicy(ABC):
    """Selects cache content to evict."""

    @abstractmethod
    def select_entries(
        self, entries: list[CacheEntryInfo], now: datetime
    ) -> list[CacheEntryInfo]:
        """Return the layer entries to evict."""

    @abstractmethod
    def select_mount_caches(
        self, mounts: list[MountCacheInfo], now: datetime
    ) -> list[MountCacheInfo]:
        """Return the mount caches to evict."""


class LeastRecentlyUsedPolicy(EvictionPolicy):
    """Evict by last use.

    Limits apply per platform namespace, since platforms never share
    entries.

    Attributes:
        max_entries: Keep at most this many layer entries per platform
                     (None = unbounded).
        max_age: Evict anything unused for longer than this (None = no
                 age limit).
    """

    def __init__(
        self,
        max_entries: int | None = None,
        max_age: timedelta | None = None,
    ) -> None:
        if max_entries is not None and max_entries < 0:
            raise ValueError("max_entries must not be negative")
        self.max_entries = max_entries
        self.max_age = max_age

    def __repr__(self) -> str:
        return (
            f"<LeastRecentlyUsedPolicy(max_entries={self.max_entries}, "
            f"max_age={self.max_age})>"
        )

    def _expired(self, last_used_at: datetime, now: datetime) -> bool:
        return self.max_age is not None and now - last_used_at > self.max_age

    def select_entries(
        self, entries: list[CacheEntryInfo], now: datetime
    ) -> list[CacheEntryInfo]:
        selected: list[CacheEntryInfo] = []
        by_platform: dict[str, list[CacheEntryInfo]] = {}
        for entry in entries:
            by_platform.setdefault(entry.platform, []).append(entry)

        for platform_entries in by_platform.values():
            # Most recently used first
            ordered = sorted(
                platform_entries,
                key=lambda e: (e.last_used_at, e.identity),
                reverse=True,
            )
            for position, entry in enumerate(ordered):
                over_limit = self.max_entries is not None and position >= self.max_entries
                if over_limit or self._expired(entry.last_used_at, now):
                    selected.append(entry)
        return selected

    def select_mount_caches(
        self, mounts: list[MountCacheInfo], now: datetime
    ) -> list[MountCacheInfo]:
        return [m for m in mounts if self._expired(m.last_used_at, now)]


@dataclass
class PruneResult:
    """Outcome of a prune run.

    Attributes:
        dry_run: True if nothing was actually removed.
        entries: Layer entries removed (or that would be removed).
        mount_caches: Mount caches removed (or that would be removed).
    """

    dry_run: bool
    entries: list[CacheEntryInfo] = field(default_factory=list)
    mount_caches: list[MountCacheInfo] = field(default_factory=list)

    @property
    def freed_bytes(self) -> int:
        """Total size of the selected content."""
        return sum(e.size_bytes for e in self.entries) + sum(
            m.size_bytes for m in self.mount_caches
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "dry_run": self.dry_run,
            "entries": [
                {"platform": e.platform, "identity": e.identity, "size_bytes": e.size_bytes}
                for e in self.entries
            ],
            "mount_caches": [
                {"platform": m.platform, "name": m.name, "size_bytes": m.size_bytes}
                for m in self.mount_caches
            ],
            "freed_bytes": self.freed_bytes,
        }


def prune_cache(
    store: CacheStore,
    policy: EvictionPolicy,
    dry_run: bool = False,
    now: datetime | None = None,
) -> PruneResult:
    """Evict cache content selected by a policy.

    Args:
        store: Cache store to prune.
        policy: Eviction policy.
        dry_run: Only report what would be removed.
        now: Reference time (defaults to the current time).

    Returns:
        PruneResult listing the selected content.
    """
    now = now or datetime.now()
    entries = policy.select_entries(store.list_entries(), now)
    mounts = policy.select_mount_caches(store.list_mount_caches(), now)
    result = PruneResult(dry_run=dry_run, entries=entries, mount_caches=mounts)

    if dry_run:
        logger.info(
            "Would prune %d entries and %d mount caches",
            len(entries),
            len(mounts),
        )
        return result

    for entry in entries:
        store.remove_entry(entry.platform, entry.identity)
    for mount in mounts:
        store.remove_mount_cache(mount.platform, mount.name)
    logger.info(
        "Pruned %d entries and %d mount caches (%d bytes)",
        len(entries),
        len(mounts),
        result.freed_bytes,
    )
    return result


__all__ = [
    "EvictionPolicy",
    "LeastRecentlyUsedPolicy",
    "PruneResult",
    "prune_cache",
]
