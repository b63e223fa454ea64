"""Filesystem snapshots, layer deltas and deterministic archives.

This module handles:
- Reading a directory tree into an in-memory snapshot
- Materializing a snapshot back onto disk
- Computing the delta between two snapshots as a layer
- Applying layers on top of a filesystem
- Serializing layers and filesystems to reproducible tar archives

Paths inside snapshots are POSIX paths relative to the image root,
without a leading slash. Deletions are recorded as whiteouts and are
written to archives as ``.wh.<name>`` entries that carry a
``STAGECACHE.whiteout`` PAX header; entries without the header are
ordinary files even when their name starts with ``.wh.``. Symlink
targets are stored as raw bytes using the filesystem encoding.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import stat
import tarfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_PAX_KEY = "STAGECACHE.whiteout"
DEFAULT_DIR_MODE = 0o755

KIND_FILE = "file"
KIND_DIR = "dir"
KIND_SYMLINK = "symlink"


class LayerFormatError(Exception):
    """Raised when a layer archive cannot be decoded."""

    def __init__(self, message: str, code: str = "layer_format_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class FileNode:
    """A single filesystem entry.

    Attributes:
        kind: One of 'file', 'dir' or 'symlink'.
        mode: Permission bits (lower 12 bits).
        data: File content, or the symlink target encoded as UTF-8.
    """

    kind: str
    mode: int
    data: bytes = b""


@dataclass(frozen=True)
class Layer:
    """A filesystem delta produced by one step.

    Attributes:
        changes: Added or modified entries by path.
        deletions: Paths removed (including everything beneath them).
    """

    changes: Mapping[str, FileNode] = field(default_factory=dict)
    deletions: frozenset[str] = frozenset()

    def is_empty(self) -> bool:
        """Check whether the layer changes nothing."""
        return not self.changes and not self.deletions

    def paths(self) -> list[str]:
        """Return all changed paths, sorted."""
        return sorted(self.changes)


def normalize_path(path: str) -> str:
    """Convert an image path ('/a/b') to snapshot form ('a/b')."""
    return "/".join(p for p in path.split("/") if p and p != ".")


def _is_under(path: str, prefix: str) -> bool:
    """Check whether ``path`` equals or lies beneath ``prefix``."""
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


def _parents(path: str) -> list[str]:
    """Return the ancestor paths of ``path``, outermost first."""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


class Filesystem:
    """An immutable filesystem snapshot."""

    def __init__(self, nodes: Mapping[str, FileNode] | None = None) -> None:
        self._nodes: dict[str, FileNode] = dict(nodes or {})

    @property
    def nodes(self) -> Mapping[str, FileNode]:
        """Read-only view of the entries."""
        return MappingProxyType(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_path(path) in self._nodes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Filesystem):
            return NotImplemented
        return self._nodes == other._nodes

    def __repr__(self) -> str:
        return f"<Filesystem(entries={len(self._nodes)})>"

    def get(self, path: str) -> FileNode | None:
        """Return the entry at an image path, or None."""
        return self._nodes.get(normalize_path(path))

    def read_bytes(self, path: str) -> bytes:
        """Return the content of a regular file.

        Raises:
            FileNotFoundError: If the path is not a regular file.
        """
        node = self.get(path)
        if node is None or node.kind != KIND_FILE:
            raise FileNotFoundError(path)
        return node.data

    def paths(self) -> list[str]:
        """Return all entry paths, sorted."""
        return sorted(self._nodes)

    def apply(self, layer: Layer) -> Filesystem:
        """Return a new filesystem with ``layer`` applied on top."""
        nodes = dict(self._nodes)
        for deleted in layer.deletions:
            for path in [p for p in nodes if _is_under(p, deleted)]:
                del nodes[path]
        for path, node in layer.changes.items():
            if node.kind != KIND_DIR:
                # A file replacing a directory hides the directory's content
                for child in [p for p in nodes if p.startswith(path + "/")]:
                    del nodes[child]
            nodes[path] = node
        return Filesystem(nodes)

    def subtree(self, path: str) -> dict[str, FileNode]:
        """Return the entries at or beneath an image path.

        Keys are relative to ``path``; a regular file or symlink at
        ``path`` itself is returned under the empty key.

        Raises:
            FileNotFoundError: If nothing exists at ``path``.
        """
        prefix = normalize_path(path)
        if not prefix:
            return dict(self._nodes)
        node = self._nodes.get(prefix)
        if node is None:
            raise FileNotFoundError(path)
        if node.kind != KIND_DIR:
            return {"": node}
        return {
            p[len(prefix) + 1 :]: n
            for p, n in self._nodes.items()
            if p.startswith(prefix + "/")
        }

    def to_tar(self) -> bytes:
        """Serialize to a reproducible tar archive."""
        return _write_tar(sorted(self._nodes.items()), [])

    def digest(self) -> str:
        """Return the sha256 digest of the reproducible tar archive."""
        return f"sha256:{hashlib.sha256(self.to_tar()).hexdigest()}"


def place_nodes(
    entries: Mapping[str, FileNode],
    dest: str,
) -> dict[str, FileNode]:
    """Re-root copied entries under an image destination path.

    Missing parent directories of ``dest`` are included with the default
    directory mode.

    Args:
        entries: Entries keyed relative to the copy source ('' is the
                 source itself when it is a single file).
        dest: Destination image path.

    Returns:
        Entries keyed by their final snapshot path.
    """
    root = normalize_path(dest)
    placed: dict[str, FileNode] = {}
    for parent in _parents(root) if root else []:
        placed[parent] = FileNode(KIND_DIR, DEFAULT_DIR_MODE)
    if root and "" not in entries:
        placed[root] = FileNode(KIND_DIR, DEFAULT_DIR_MODE)
    for rel, node in entries.items():
        if not rel:
            if not root:
                raise ValueError("cannot place a single file at the image root")
            placed[root] = node
            continue
        target = f"{root}/{rel}" if root else rel
        placed[target] = node
    return placed


def snapshot_directory(
    root: Path,
    exclude: Iterable[str] = (),
) -> dict[str, FileNode]:
    """Read a directory tree into snapshot entries.

    Symlinks are recorded, never followed.

    Args:
        root: Directory to read.
        exclude: Snapshot paths whose subtrees are skipped.

    Returns:
        Entries keyed by POSIX path relative to ``root``.
    """
    excluded = [normalize_path(e) for e in exclude]
    nodes: dict[str, FileNode] = {}
    if not root.exists():
        return nodes

    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_base = base.relative_to(root).as_posix()
        rel_base = "" if rel_base == "." else rel_base

        kept_dirs = []
        for name in sorted(dirnames):
            rel = f"{rel_base}/{name}" if rel_base else name
            if any(_is_under(rel, e) for e in excluded if e):
                continue
            full = base / name
            st = full.lstat()
            if stat.S_ISLNK(st.st_mode):
                nodes[rel] = FileNode(
                    KIND_SYMLINK, 0o777, os.fsencode(os.readlink(full))
                )
                continue
            nodes[rel] = FileNode(KIND_DIR, stat.S_IMODE(st.st_mode))
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            rel = f"{rel_base}/{name}" if rel_base else name
            if any(_is_under(rel, e) for e in excluded if e):
                continue
            full = base / name
            st = full.lstat()
            if stat.S_ISLNK(st.st_mode):
                nodes[rel] = FileNode(
                    KIND_SYMLINK, 0o777, os.fsencode(os.readlink(full))
                )
            elif stat.S_ISREG(st.st_mode):
                nodes[rel] = FileNode(
                    KIND_FILE, stat.S_IMODE(st.st_mode), full.read_bytes()
                )
            else:
                logger.debug("Skipping special file: %s", full)

    return nodes


def materialize(nodes: Mapping[str, FileNode], root: Path) -> None:
    """Write snapshot entries onto disk beneath ``root``.

    Directories are created first and get their modes applied last so
    read-only directories can still be populated.
    """
    root.mkdir(parents=True, exist_ok=True)
    ordered = sorted(nodes.items())

    for path, node in ordered:
        target = root / path
        if node.kind == KIND_DIR:
            target.mkdir(parents=True, exist_ok=True)

    for path, node in ordered:
        target = root / path
        if node.kind == KIND_DIR:
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.exists():
            target.unlink()
        if node.kind == KIND_SYMLINK:
            os.symlink(os.fsdecode(node.data), target)
        else:
            target.write_bytes(node.data)
            target.chmod(node.mode)

    for path, node in reversed(ordered):
        if node.kind == KIND_DIR:
            (root / path).chmod(node.mode)


def diff_snapshots(
    before: Mapping[str, FileNode],
    after: Mapping[str, FileNode],
    exclude: Iterable[str] = (),
) -> Layer:
    """Compute the layer that turns ``before`` into ``after``.

    Args:
        before: Snapshot prior to the step.
        after: Snapshot after the step.
        exclude: Snapshot paths whose subtrees never enter the layer.

    Returns:
        Layer with changed entries and minimal deletions.
    """
    excluded = [normalize_path(e) for e in exclude if normalize_path(e)]

    def keep(path: str) -> bool:
        return not any(_is_under(path, e) for e in excluded)

    changes = {
        path: node
        for path, node in after.items()
        if keep(path) and before.get(path) != node
    }
    removed = sorted(p for p in before if p not in after and keep(p))
    deletions: set[str] = set()
    for path in removed:
        if not any(_is_under(path, d) for d in deletions):
            deletions.add(path)
    return Layer(changes=changes, deletions=frozenset(deletions))


def _tar_info(name: str, node: FileNode) -> tarfile.TarInfo:
    """Create a normalized TarInfo for an entry."""
    info = tarfile.TarInfo(name=name)
    info.mode = node.mode
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if node.kind == KIND_DIR:
        info.type = tarfile.DIRTYPE
    elif node.kind == KIND_SYMLINK:
        info.type = tarfile.SYMTYPE
        info.linkname = os.fsdecode(node.data)
    else:
        info.type = tarfile.REGTYPE
        info.size = len(node.data)
    return info


def _whiteout_name(path: str) -> str:
    """Return the archive name that marks ``path`` as deleted."""
    head, _, name = path.rpartition("/")
    return f"{head}/{WHITEOUT_PREFIX}{name}" if head else f"{WHITEOUT_PREFIX}{name}"


def _deleted_path(name: str) -> str | None:
    """Return the path a whiteout archive name marks as deleted."""
    head, _, base = name.rpartition("/")
    if not base.startswith(WHITEOUT_PREFIX):
        return None
    original = base[len(WHITEOUT_PREFIX) :]
    return f"{head}/{original}" if head else original


def _write_tar(
    entries: list[tuple[str, FileNode]],
    deletions: list[str],
) -> bytes:
    """Write entries and whiteouts to an uncompressed, reproducible tar."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in sorted(deletions):
            info = _tar_info(_whiteout_name(path), FileNode(KIND_FILE, 0o644))
            info.pax_headers = {WHITEOUT_PAX_KEY: path}
            tar.addfile(info, io.BytesIO(b""))
        for path, node in entries:
            info = _tar_info(path, node)
            if node.kind == KIND_FILE:
                tar.addfile(info, io.BytesIO(node.data))
            else:
                tar.addfile(info)
    return buffer.getvalue()


def layer_to_tar(layer: Layer) -> bytes:
    """Serialize a layer to a reproducible tar archive."""
    return _write_tar(sorted(layer.changes.items()), sorted(layer.deletions))


def layer_from_tar(data: bytes) -> Layer:
    """Decode a layer archive written by :func:`layer_to_tar`.

    Raises:
        LayerFormatError: If the archive is corrupt or contains unsafe paths.
    """
    changes: dict[str, FileNode] = {}
    deletions: set[str] = set()
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            for member in tar.getmembers():
                name = member.name
                if name.startswith("/") or ".." in name.split("/"):
                    raise LayerFormatError(f"Unsafe path in layer: {name}")
                deleted = member.pax_headers.get(WHITEOUT_PAX_KEY)
                if deleted is not None:
                    if deleted != _deleted_path(name):
                        raise LayerFormatError(f"Malformed whiteout in layer: {name}")
                    deletions.add(deleted)
                    continue
                mode = stat.S_IMODE(member.mode)
                if member.isdir():
                    changes[name] = FileNode(KIND_DIR, mode)
                elif member.issym():
                    changes[name] = FileNode(
                        KIND_SYMLINK, mode, os.fsencode(member.linkname)
                    )
                elif member.isfile():
                    extracted = tar.extractfile(member)
                    content = extracted.read() if extracted is not None else b""
                    changes[name] = FileNode(KIND_FILE, mode, content)
                else:
                    raise LayerFormatError(f"Unsupported entry type in layer: {name}")
    except tarfile.TarError as e:
        raise LayerFormatError(f"Corrupt layer archive: {e}") from e
    return Layer(changes=changes, deletions=frozenset(deletions))


def compute_tree_hash(entries: Mapping[str, FileNode]) -> str:
    """Compute a deterministic hash of snapshot entries.

    The hash is computed over sorted relative paths, entry kinds, modes
    and contents. Keys are relative to the hashed root, so the root's own
    name never contributes.

    Args:
        entries: Entries to hash.

    Returns:
        SHA-256 hex digest.
    """
    hasher = hashlib.sha256()
    for path in sorted(entries):
        node = entries[path]
        # Hash: path\0kind\0mode\0content\0
        hasher.update(os.fsencode(path))
        hasher.update(b"\0")
        hasher.update(node.kind.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{node.mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(node.data)
        hasher.update(b"\0")
    return hasher.hexdigest()


def export_to_directory(filesystem: Filesystem, output_dir: Path) -> Path:
    """Write a filesystem onto disk.

    Args:
        filesystem: Filesystem to write.
        output_dir: Destination directory (created if needed).

    Returns:
        The output directory.
    """
    materialize(filesystem.nodes, output_dir)
    logger.info("Exported %d entries to %s", len(filesystem), output_dir)
    return output_dir


__all__ = [
    "DEFAULT_DIR_MODE",
    "KIND_DIR",
    "KIND_FILE",
    "KIND_SYMLINK",
    "FileNode",
    "Filesystem",
    "Layer",
    "LayerFormatError",
    "compute_tree_hash",
    "diff_snapshots",
    "export_to_directory",
    "layer_from_tar",
    "layer_to_tar",
    "materialize",
    "normalize_path",
    "place_nodes",
    "snapshot_directory",
]
