"""Shared type definitions for stagecache.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a platform build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Resolution of a single step within a platform build."""

    PENDING = "pending"
    HIT = "hit"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutputKind(str, Enum):
    """What a step produces."""

    LAYER = "layer"
    NONE = "none"


class EntryKind(str, Enum):
    """Kind of a stored cache entry.

    EMPTY entries mark steps with no produced layer so they remain
    identity-tracked for cache hits.
    """

    LAYER = "layer"
    EMPTY = "empty"


class BatchMode(str, Enum):
    """How sibling platform builds react to a platform failure."""

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass
class CacheEntryInfo:
    """Metadata about a stored layer entry (no payload)."""

    platform: str
    identity: str
    kind: str
    size_bytes: int
    sha256: str
    created_at: datetime
    last_used_at: datetime


@dataclass
class MountCacheInfo:
    """Metadata about a mount cache slot."""

    platform: str
    name: str
    path: str
    created_at: datetime
    last_used_at: datetime
    size_bytes: int = 0


__all__ = [
    "BatchMode",
    "BuildStatus",
    "CacheEntryInfo",
    "EntryKind",
    "MountCacheInfo",
    "OutputKind",
    "StepStatus",
]
