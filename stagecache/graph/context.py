"""Build context access.

The build context is the directory whose files steps may copy into the
image. This module resolves copy sources safely inside that directory,
loads their content and computes their content hashes.
"""

from __future__ import annotations

import logging
import stat
import threading
from pathlib import Path

from stagecache.builds.layers import (
    KIND_FILE,
    FileNode,
    compute_tree_hash,
    snapshot_directory,
)

logger = logging.getLogger(__name__)


class BuildContextError(Exception):
    """Raised when a copy source cannot be resolved in the build context."""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        code: str = "build_context_error",
    ) -> None:
        super().__init__(message)
        self.source = source
        self.code = code


class BuildContext:
    """Read-only view of a build context directory.

    Loaded entries and their hashes are memoized, so every platform
    build sharing a context reads each source once.

    Attributes:
        root: Resolved context directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        if not self.root.is_dir():
            raise BuildContextError(
                f"Build context is not a directory: {root}",
                code="context_not_found",
            )
        self._entries: dict[str, dict[str, FileNode]] = {}
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<BuildContext(root='{self.root}')>"

    def resolve(self, source: str) -> Path:
        """Resolve a context-relative path, refusing escapes.

        Raises:
            BuildContextError: If the path escapes the context or is missing.
        """
        path = (self.root / source).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise BuildContextError(
                f"Source path traversal detected: {source} resolves outside "
                f"{self.root}",
                source=source,
                code="path_traversal",
            ) from None
        if not path.exists():
            raise BuildContextError(
                f"Source not found in build context: {source}",
                source=source,
                code="source_not_found",
            )
        return path

    def load(self, source: str) -> dict[str, FileNode]:
        """Load a copy source.

        Returns:
            Entries keyed relative to the source; a single file is returned
            under the empty key.

        Raises:
            BuildContextError: If the source cannot be read.
        """
        with self._lock:
            cached = self._entries.get(source)
        if cached is not None:
            return cached

        path = self.resolve(source)
        try:
            if path.is_dir():
                entries = snapshot_directory(path)
            else:
                mode = stat.S_IMODE(path.stat().st_mode)
                entries = {"": FileNode(KIND_FILE, mode, path.read_bytes())}
        except OSError as e:
            raise BuildContextError(
                f"Failed to read source {source}: {e}",
                source=source,
                code="source_read_error",
            ) from e

        with self._lock:
            self._entries[source] = entries
        return entries

    def content_hash(self, source: str) -> str:
        """Return the content hash of a copy source.

        Only content (including paths inside a copied directory and file
        modes) contributes; the source's own name does not.
        """
        with self._lock:
            cached = self._hashes.get(source)
        if cached is not None:
            return cached

        digest = compute_tree_hash(self.load(source))
        logger.debug("Hashed context source %s: %s", source, digest[:16])
        with self._lock:
            self._hashes[source] = digest
        return digest

    def is_file(self, source: str) -> bool:
        """Check whether a source is a single file (not a directory)."""
        return "" in self.load(source)


__all__ = ["BuildContext", "BuildContextError"]
