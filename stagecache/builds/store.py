"""Cache store for step layers and mount caches.

This module handles:
- Platform-namespaced storage of step layers keyed by step identity
- Persistent, mutable mount cache slots with per-slot locking
- Error containment: read failures become misses, write failures never
  corrupt existing entries

Two entry kinds are kept apart by type: ``CacheEntry`` holds an immutable
layer addressed by identity, ``MountCacheHandle`` points at a mutable
directory addressed by name. Neither can be reached through the other.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from stagecache.builds.layers import Layer, layer_from_tar, layer_to_tar
from stagecache.builds.models import CacheEntryRecord, MountCacheRecord
from stagecache.db import get_session
from stagecache.types import CacheEntryInfo, EntryKind, MountCacheInfo

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


class CacheStoreError(Exception):
    """Raised when the cache store cannot read or write an entry."""

    def __init__(self, message: str, code: str = "cache_store_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class CacheEntry:
    """A stored step output.

    Attributes:
        kind: LAYER for a stored archive, EMPTY for steps without output.
        blob: Layer archive bytes (empty for EMPTY entries).
        sha256: SHA-256 hex digest of ``blob``.
        last_used_at: When the entry was last stored or read.
    """

    kind: EntryKind
    blob: bytes = b""
    sha256: str = hashlib.sha256(b"").hexdigest()
    last_used_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_layer(cls, layer: Layer | None) -> CacheEntry:
        """Create an entry for a step output (None for no output)."""
        if layer is None:
            return cls(kind=EntryKind.EMPTY)
        blob = layer_to_tar(layer)
        return cls(
            kind=EntryKind.LAYER,
            blob=blob,
            sha256=hashlib.sha256(blob).hexdigest(),
        )

    def layer(self) -> Layer:
        """Decode the stored layer (an empty layer for EMPTY entries)."""
        if self.kind == EntryKind.EMPTY:
            return Layer()
        return layer_from_tar(self.blob)


class MountCacheHandle:
    """Exclusive access point to one (platform, name) mount cache slot.

    Attributes:
        platform: Platform namespace.
        name: Mount cache name.
        path: Directory holding the cache content.
    """

    def __init__(self, platform: str, name: str, path: Path) -> None:
        self.platform = platform
        self.name = name
        self.path = path
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<MountCacheHandle(platform='{self.platform}', name='{self.name}')>"

    @contextmanager
    def locked(self) -> Iterator[Path]:
        """Hold the slot exclusively; yields the slot directory."""
        logger.debug("Acquiring mount cache %s/%s", self.platform, self.name)
        with self._lock:
            yield self.path
        logger.debug("Released mount cache %s/%s", self.platform, self.name)

    def is_locked(self) -> bool:
        """Check whether a step currently holds the slot."""
        return self._lock.locked()


def platform_dirname(platform: str) -> str:
    """Return a filesystem-safe, collision-free directory name for a platform."""
    return quote(platform, safe="")


class CacheStore(ABC):
    """Base class for cache stores.

    Subclasses implement raw storage; this class applies the error policy
    and hands out mount cache handles, one per (platform, name).
    """

    def __init__(self) -> None:
        self._handles: dict[tuple[str, str], MountCacheHandle] = {}
        self._handles_lock = threading.Lock()

    @abstractmethod
    def _read(self, platform: str, key: str) -> CacheEntry | None:
        """Read an entry, or None if absent."""

    @abstractmethod
    def _write(self, platform: str, key: str, entry: CacheEntry) -> None:
        """Durably write an entry unless one already exists."""

    @abstractmethod
    def _mount_dir(self, platform: str, name: str) -> Path:
        """Return the slot directory, creating it empty if absent."""

    @abstractmethod
    def list_entries(self, platform: str | None = None) -> list[CacheEntryInfo]:
        """List stored layer entries."""

    @abstractmethod
    def list_mount_caches(self, platform: str | None = None) -> list[MountCacheInfo]:
        """List mount cache slots."""

    @abstractmethod
    def remove_entry(self, platform: str, key: str) -> bool:
        """Remove a layer entry. Returns True if something was removed."""

    @abstractmethod
    def _remove_mount_dir(self, platform: str, name: str) -> bool:
        """Remove a slot's content and bookkeeping."""

    def get(self, platform: str, key: str) -> CacheEntry | None:
        """Look up an entry.

        Storage errors are logged and reported as a miss.
        """
        try:
            entry = self._read(platform, key)
        except (CacheStoreError, OSError, SQLAlchemyError) as e:
            logger.warning(
                "Cache read failed for %s %s, treating as miss: %s",
                platform,
                key[:23],
                e,
            )
            return None
        if entry is None:
            logger.debug("Cache miss: %s %s", platform, key[:23])
        else:
            logger.debug("Cache hit: %s %s", platform, key[:23])
        return entry

    def put(self, platform: str, key: str, entry: CacheEntry) -> bool:
        """Store an entry.

        Writes are idempotent; an existing entry for the key is kept.

        Returns:
            True if the entry is stored, False if the write failed.
        """
        try:
            self._write(platform, key, entry)
        except (CacheStoreError, OSError, SQLAlchemyError) as e:
            logger.warning("Cache write failed for %s %s: %s", platform, key[:23], e)
            return False
        return True

    def get_mount_cache(self, platform: str, name: str) -> MountCacheHandle:
        """Return the handle of a mount cache slot, creating it empty if absent.

        Raises:
            CacheStoreError: If the slot cannot be created.
        """
        try:
            with self._handles_lock:
                handle = self._handles.get((platform, name))
                if handle is None:
                    handle = MountCacheHandle(
                        platform, name, self._mount_dir(platform, name)
                    )
                    self._handles[(platform, name)] = handle
                    logger.debug(
                        "Opened mount cache %s/%s at %s", platform, name, handle.path
                    )
                else:
                    self._touch_mount(platform, name)
        except (OSError, SQLAlchemyError) as e:
            raise CacheStoreError(
                f"Failed to open mount cache {platform}/{name}: {e}",
                code="mount_cache_unavailable",
            ) from e
        return handle

    def remove_mount_cache(self, platform: str, name: str) -> bool:
        """Remove a mount cache slot, waiting for any step using it."""
        handle = self.get_mount_cache(platform, name)
        with handle.locked():
            removed = self._remove_mount_dir(platform, name)
            with self._handles_lock:
                self._handles.pop((platform, name), None)
        return removed

    def _touch_mount(self, platform: str, name: str) -> None:
        """Record that a slot was attached again."""

    def namespace(self, platform: str) -> PlatformCacheView:
        """Return a view bound to one platform namespace."""
        return PlatformCacheView(self, platform)

    def close(self) -> None:
        """Release resources held by the store."""


class PlatformCacheView:
    """A cache store view restricted to one platform namespace.

    The planner only ever sees a view, so it never handles platform keys.
    """

    def __init__(self, store: CacheStore, platform: str) -> None:
        self.store = store
        self.platform = platform

    def __repr__(self) -> str:
        return f"<PlatformCacheView(platform='{self.platform}')>"

    def get(self, key: str) -> CacheEntry | None:
        """Look up an entry in this namespace."""
        return self.store.get(self.platform, key)

    def put(self, key: str, entry: CacheEntry) -> bool:
        """Store an entry in this namespace."""
        return self.store.put(self.platform, key, entry)

    def get_mount_cache(self, name: str) -> MountCacheHandle:
        """Return a mount cache handle in this namespace."""
        return self.store.get_mount_cache(self.platform, name)


def _dir_size(path: Path) -> int:
    """Return the total size of regular files beneath a directory."""
    total = 0
    for p in path.rglob("*"):
        if p.is_file() and not p.is_symlink():
            total += p.stat().st_size
    return total


class MemoryCacheStore(CacheStore):
    """In-process cache store.

    Layer entries live in a dict; mount cache slots live in a private
    temporary directory removed by :meth:`close`.
    """

    def __init__(self, mount_root: Path | None = None) -> None:
        super().__init__()
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._created: dict[tuple[str, str], datetime] = {}
        self._mounts: dict[tuple[str, str], tuple[datetime, datetime]] = {}
        self._lock = threading.Lock()
        self._owns_mount_root = mount_root is None
        self._mount_root = mount_root

    def _root(self) -> Path:
        if self._mount_root is None:
            self._mount_root = Path(tempfile.mkdtemp(prefix="stagecache_mounts_"))
        return self._mount_root

    def _read(self, platform: str, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get((platform, key))
            if entry is None:
                return None
            entry = CacheEntry(
                kind=entry.kind,
                blob=entry.blob,
                sha256=entry.sha256,
                last_used_at=datetime.now(),
            )
            self._entries[(platform, key)] = entry
            return entry

    def _write(self, platform: str, key: str, entry: CacheEntry) -> None:
        with self._lock:
            if (platform, key) in self._entries:
                return
            self._entries[(platform, key)] = entry
            self._created[(platform, key)] = datetime.now()

    def _mount_dir(self, platform: str, name: str) -> Path:
        path = self._root() / platform_dirname(platform) / name
        path.mkdir(parents=True, exist_ok=True)
        now = datetime.now()
        with self._lock:
            created, _ = self._mounts.get((platform, name), (now, now))
            self._mounts[(platform, name)] = (created, now)
        return path

    def _touch_mount(self, platform: str, name: str) -> None:
        with self._lock:
            created, _ = self._mounts.get((platform, name), (datetime.now(), None))
            self._mounts[(platform, name)] = (created, datetime.now())

    def list_entries(self, platform: str | None = None) -> list[CacheEntryInfo]:
        with self._lock:
            items = list(self._entries.items())
        return [
            CacheEntryInfo(
                platform=p,
                identity=k,
                kind=e.kind.value,
                size_bytes=len(e.blob),
                sha256=e.sha256,
                created_at=self._created.get((p, k), e.last_used_at),
                last_used_at=e.last_used_at,
            )
            for (p, k), e in sorted(items)
            if platform is None or p == platform
        ]

    def list_mount_caches(self, platform: str | None = None) -> list[MountCacheInfo]:
        with self._lock:
            items = sorted(self._mounts.items())
        infos = []
        for (p, name), (created, used) in items:
            if platform is not None and p != platform:
                continue
            path = self._root() / platform_dirname(p) / name
            infos.append(
                MountCacheInfo(
                    platform=p,
                    name=name,
                    path=str(path),
                    created_at=created,
                    last_used_at=used,
                    size_bytes=_dir_size(path) if path.exists() else 0,
                )
            )
        return infos

    def remove_entry(self, platform: str, key: str) -> bool:
        with self._lock:
            self._created.pop((platform, key), None)
            return self._entries.pop((platform, key), None) is not None

    def _remove_mount_dir(self, platform: str, name: str) -> bool:
        path = self._root() / platform_dirname(platform) / name
        with self._lock:
            known = self._mounts.pop((platform, name), None) is not None
        shutil.rmtree(path, ignore_errors=True)
        return known

    def close(self) -> None:
        """Remove the temporary mount root if this store created it."""
        if self._owns_mount_root and self._mount_root is not None:
            shutil.rmtree(self._mount_root, ignore_errors=True)
            self._mount_root = None


class FileCacheStore(CacheStore):
    """Persistent cache store.

    Layout under ``root``::

        layers/<platform>/<hh>/<hex>.tar   layer archives
        mounts/<platform>/<name>/          mount cache slots

    An SQLAlchemy index records entries and slots with their last-used
    timestamps. A layer archive is published with an atomic rename before
    its index row is committed, so readers never observe partial entries.
    """

    def __init__(self, root: Path, session_factory: sessionmaker[Session]) -> None:
        super().__init__()
        self.root = root
        self.session_factory = session_factory
        self._lock = threading.Lock()
        (self.root / "layers").mkdir(parents=True, exist_ok=True)
        (self.root / "mounts").mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"<FileCacheStore(root='{self.root}')>"

    def _blob_path(self, platform: str, key: str) -> Path:
        digest = key.split(":", 1)[-1]
        return self.root / "layers" / platform_dirname(platform) / digest[:2] / f"{digest}.tar"

    def _slot_path(self, platform: str, name: str) -> Path:
        return self.root / "mounts" / platform_dirname(platform) / name

    def _find_entry(
        self, session: Session, platform: str, key: str
    ) -> CacheEntryRecord | None:
        stmt = select(CacheEntryRecord).where(
            CacheEntryRecord.platform == platform,
            CacheEntryRecord.identity == key,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _read(self, platform: str, key: str) -> CacheEntry | None:
        with get_session(self.session_factory) as session:
            record = self._find_entry(session, platform, key)
            if record is None:
                return None

            blob = b""
            if record.kind == EntryKind.LAYER.value:
                if record.blob_path is None:
                    raise CacheStoreError(f"Entry {key} has no blob", code="missing_blob")
                blob_path = Path(record.blob_path)
                if not blob_path.exists():
                    raise CacheStoreError(
                        f"Blob missing for entry {key}: {blob_path}",
                        code="missing_blob",
                    )
                blob = blob_path.read_bytes()
                if hashlib.sha256(blob).hexdigest() != record.sha256:
                    raise CacheStoreError(
                        f"Blob digest mismatch for entry {key}",
                        code="corrupt_blob",
                    )

            record.last_used_at = datetime.now()
            return CacheEntry(
                kind=EntryKind(record.kind),
                blob=blob,
                sha256=record.sha256,
                last_used_at=record.last_used_at,
            )

    def _write(self, platform: str, key: str, entry: CacheEntry) -> None:
        with self._lock, get_session(self.session_factory) as session:
            existing = self._find_entry(session, platform, key)
            if existing is not None:
                if existing.sha256 != entry.sha256:
                    logger.debug(
                        "Keeping existing entry for %s %s (content differs)",
                        platform,
                        key[:23],
                    )
                return

            blob_path: Path | None = None
            if entry.kind == EntryKind.LAYER:
                blob_path = self._blob_path(platform, key)
                blob_path.parent.mkdir(parents=True, exist_ok=True)
                tmp = blob_path.with_name(f".{blob_path.name}.{uuid.uuid4().hex[:8]}.tmp")
                try:
                    with tmp.open("wb") as f:
                        f.write(entry.blob)
                        f.flush()
                        os.fsync(f.fileno())
                    tmp.replace(blob_path)
                finally:
                    tmp.unlink(missing_ok=True)

            now = datetime.now()
            session.add(
                CacheEntryRecord(
                    platform=platform,
                    identity=key,
                    kind=entry.kind.value,
                    blob_path=str(blob_path) if blob_path else None,
                    size_bytes=len(entry.blob),
                    sha256=entry.sha256,
                    created_at=now,
                    last_used_at=now,
                )
            )
        logger.debug("Stored %s entry %s %s", entry.kind.value, platform, key[:23])

    def _mount_dir(self, platform: str, name: str) -> Path:
        path = self._slot_path(platform, name)
        path.mkdir(parents=True, exist_ok=True)
        with self._lock, get_session(self.session_factory) as session:
            stmt = select(MountCacheRecord).where(
                MountCacheRecord.platform == platform,
                MountCacheRecord.name == name,
            )
            record = session.execute(stmt).scalar_one_or_none()
            now = datetime.now()
            if record is None:
                session.add(
                    MountCacheRecord(
                        platform=platform,
                        name=name,
                        path=str(path),
                        created_at=now,
                        last_used_at=now,
                    )
                )
            else:
                record.last_used_at = now
        return path

    def _touch_mount(self, platform: str, name: str) -> None:
        with self._lock, get_session(self.session_factory) as session:
            stmt = select(MountCacheRecord).where(
                MountCacheRecord.platform == platform,
                MountCacheRecord.name == name,
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is not None:
                record.last_used_at = datetime.now()

    def list_entries(self, platform: str | None = None) -> list[CacheEntryInfo]:
        with get_session(self.session_factory) as session:
            stmt = select(CacheEntryRecord)
            if platform is not None:
                stmt = stmt.where(CacheEntryRecord.platform == platform)
            stmt = stmt.order_by(CacheEntryRecord.platform, CacheEntryRecord.identity)
            return [
                CacheEntryInfo(
                    platform=r.platform,
                    identity=r.identity,
                    kind=r.kind,
                    size_bytes=r.size_bytes,
                    sha256=r.sha256,
                    created_at=r.created_at,
                    last_used_at=r.last_used_at,
                )
                for r in session.execute(stmt).scalars().all()
            ]

    def list_mount_caches(self, platform: str | None = None) -> list[MountCacheInfo]:
        with get_session(self.session_factory) as session:
            stmt = select(MountCacheRecord)
            if platform is not None:
                stmt = stmt.where(MountCacheRecord.platform == platform)
            stmt = stmt.order_by(MountCacheRecord.platform, MountCacheRecord.name)
            records = list(session.execute(stmt).scalars().all())
        return [
            MountCacheInfo(
                platform=r.platform,
                name=r.name,
                path=r.path,
                created_at=r.created_at,
                last_used_at=r.last_used_at,
                size_bytes=_dir_size(Path(r.path)) if Path(r.path).exists() else 0,
            )
            for r in records
        ]

    def remove_entry(self, platform: str, key: str) -> bool:
        with self._lock, get_session(self.session_factory) as session:
            record = self._find_entry(session, platform, key)
            if record is None:
                return False
            blob_path = record.blob_path
            session.delete(record)
        # Index row goes first so readers never find a row without its blob
        if blob_path:
            Path(blob_path).unlink(missing_ok=True)
        return True

    def _remove_mount_dir(self, platform: str, name: str) -> bool:
        with self._lock, get_session(self.session_factory) as session:
            stmt = select(MountCacheRecord).where(
                MountCacheRecord.platform == platform,
                MountCacheRecord.name == name,
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is not None:
                session.delete(record)
        shutil.rmtree(self._slot_path(platform, name), ignore_errors=True)
        return record is not None


__all__ = [
    "CacheEntry",
    "CacheStore",
    "CacheStoreError",
    "FileCacheStore",
    "MemoryCacheStore",
    "MountCacheHandle",
    "PlatformCacheView",
    "platform_dirname",
]
