"""Step executor.

This module handles:
- Materializing a step's base filesystem into a scratch root
- Applying copy sources before the command runs
- Attaching mount caches at their targets for the command only
- Running the command with subprocess, capturing output to a log file
- Enforcing step timeouts
- Capturing the filesystem delta as the step's output layer

Commands run on the host with the scratch root as their image root: the
working directory is ``<root>/<workdir>`` and ``STAGECACHE_ROOTFS`` holds
the root path. Runtime isolation is the caller's concern.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from stagecache.builds.layers import (
    KIND_DIR,
    FileNode,
    Filesystem,
    Layer,
    diff_snapshots,
    materialize,
    normalize_path,
    place_nodes,
    snapshot_directory,
)

if TYPE_CHECKING:
    from stagecache.builds.store import MountCacheHandle
    from stagecache.graph.schema import StepSchema

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
LOG_TAIL_LINES = 20


class StepExecutionError(Exception):
    """Raised when a step's command cannot be run or fails.

    Attributes:
        exit_code: Process exit code, if the process ran.
        code: Stable error code.
        identity: Identity of the failing step.
        command: Printable command of the failing step.
        output_tail: Last lines of the command output.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "step_failed",
        identity: str | None = None,
        command: str | None = None,
        output_tail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.identity = identity
        self.command = command
        self.output_tail = output_tail


@dataclass(frozen=True)
class CopyOperation:
    """Resolved copy source ready to be placed into the image.

    Attributes:
        entries: Entries keyed relative to the source.
        dest: Destination image path.
    """

    entries: Mapping[str, FileNode]
    dest: str


class Executor(ABC):
    """Runs a single step against a base filesystem."""

    @abstractmethod
    def run(
        self,
        step: StepSchema,
        base: Filesystem,
        mounts: Mapping[str, MountCacheHandle],
        copies: Sequence[CopyOperation] = (),
        platform: str = "",
        identity: str = "",
    ) -> Layer:
        """Run a step and return its output layer.

        Args:
            step: Step to run.
            base: Filesystem the step runs on.
            mounts: Mount cache handles keyed by cache name.
            copies: Copy sources, applied in order before the command.
            platform: Target platform, exposed as TARGETPLATFORM.
            identity: Step identity, used in reports.

        Returns:
            Filesystem delta produced by the copies and the command.

        Raises:
            StepExecutionError: If the command fails or cannot be run.
        """


def apply_copies(base: Filesystem, copies: Sequence[CopyOperation]) -> Filesystem:
    """Return ``base`` with copy operations applied in order.

    Existing directories keep their modes when a copy passes through them.

    Raises:
        ValueError: If a single file would be placed at the image root.
    """
    fs = base
    for copy in copies:
        placed = place_nodes(copy.entries, copy.dest)
        changes = {
            path: node
            for path, node in placed.items()
            if not (node.kind == KIND_DIR and _is_dir(fs.get(path)))
        }
        fs = fs.apply(Layer(changes=changes))
    return fs


def _is_dir(node: FileNode | None) -> bool:
    return node is not None and node.kind == KIND_DIR


def _tail(log_path: Path, lines: int = LOG_TAIL_LINES) -> str:
    """Return the last lines of a log file."""
    try:
        content = log_path.read_text(errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def _replace_tree(src: Path, dest: Path) -> None:
    """Replace ``dest`` with a copy of ``src``.

    The copy is staged next to ``dest`` and swapped in with renames, so
    an interrupted write-back leaves the previous content in place.
    """
    staging = dest.with_name(f".{dest.name}.{uuid.uuid4().hex[:8]}.new")
    retired = dest.with_name(f".{dest.name}.{uuid.uuid4().hex[:8]}.old")
    shutil.copytree(src, staging, symlinks=True)
    try:
        if dest.exists():
            dest.rename(retired)
        staging.rename(dest)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(retired, ignore_errors=True)


class ShellExecutor(Executor):
    """Executor running commands as host subprocesses in a scratch root.

    Attributes:
        shell: Interpreter used for string commands.
        timeout: Per-step timeout in seconds (None = no timeout).
        tmp_dir: Parent directory for scratch roots (None = system default).
    """

    def __init__(
        self,
        shell: str = "/bin/sh",
        timeout: int | None = None,
        tmp_dir: Path | None = None,
    ) -> None:
        self.shell = shell
        self.timeout = timeout
        self.tmp_dir = tmp_dir

    def __repr__(self) -> str:
        return f"<ShellExecutor(shell='{self.shell}', timeout={self.timeout})>"

    def compose_command(self, step: StepSchema) -> list[str]:
        """Compose the argument list for a step's command."""
        if isinstance(step.run, str):
            return [self.shell, "-c", step.run]
        return list(step.run)

    def compose_env(self, step: StepSchema, rootfs: Path, platform: str) -> dict[str, str]:
        """Compose the command environment.

        The host environment is not inherited apart from PATH.
        """
        env = {
            "PATH": os.environ.get("PATH", DEFAULT_PATH),
            "HOME": str(rootfs / "root"),
            "STAGECACHE_ROOTFS": str(rootfs),
        }
        if platform:
            env["TARGETPLATFORM"] = platform
        env.update(step.env)
        return env

    def run(
        self,
        step: StepSchema,
        base: Filesystem,
        mounts: Mapping[str, MountCacheHandle],
        copies: Sequence[CopyOperation] = (),
        platform: str = "",
        identity: str = "",
    ) -> Layer:
        if self.tmp_dir is not None:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
        command_text = step.command_text()

        try:
            staged = apply_copies(base, copies)
        except ValueError as e:
            raise StepExecutionError(
                f"Invalid copy destination: {e}",
                code="invalid_destination",
                identity=identity,
                command=command_text,
            ) from e

        targets = [normalize_path(m.target) for m in step.mounts]
        try:
            with tempfile.TemporaryDirectory(
                prefix="stagecache_step_", dir=self.tmp_dir
            ) as tmp:
                work = Path(tmp)
                rootfs = work / "rootfs"
                try:
                    materialize(staged.nodes, rootfs)
                except (OSError, UnicodeError) as e:
                    raise StepExecutionError(
                        f"Failed to prepare step filesystem: {e}",
                        code="execution_error",
                        identity=identity,
                        command=command_text,
                    ) from e

                with ExitStack() as stack:
                    # Sorted acquisition keeps concurrent steps deadlock free
                    for name in sorted(mounts):
                        stack.enter_context(mounts[name].locked())
                    self._run_with_mounts(
                        step, staged, rootfs, work, mounts, platform, identity
                    )

                after = snapshot_directory(rootfs, exclude=targets)
        except (OSError, UnicodeError) as e:
            logger.error("Failed to capture output of %s: %s", command_text, e)
            raise StepExecutionError(
                f"Failed to capture step output: {e}",
                code="execution_error",
                identity=identity,
                command=command_text,
            ) from e

        layer = diff_snapshots(base.nodes, after, exclude=targets)
        logger.debug(
            "Step %s produced %d changes and %d deletions",
            identity[:23] or command_text,
            len(layer.changes),
            len(layer.deletions),
        )
        return layer

    def _run_with_mounts(
        self,
        step: StepSchema,
        staged: Filesystem,
        rootfs: Path,
        work: Path,
        mounts: Mapping[str, MountCacheHandle],
        platform: str,
        identity: str,
    ) -> None:
        """Attach mounts, run the command, write mounts back, detach."""
        attached: list[tuple[MountCacheHandle, Path, Path | None, list[Path]]] = []
        try:
            for index, mount in enumerate(step.mounts):
                handle = mounts[mount.cache]
                target = rootfs / normalize_path(mount.target)
                created = [
                    p
                    for p in reversed(target.relative_to(rootfs).parents)
                    if str(p) != "." and not (rootfs / p).exists()
                ]
                created_dirs = [rootfs / p for p in created]
                hidden: Path | None = None
                if target.exists() or target.is_symlink():
                    # Image content under the mount point is hidden while mounted
                    hidden = work / f"hidden-{index}"
                    target.rename(hidden)
                shutil.copytree(handle.path, target, symlinks=True)
                attached.append((handle, target, hidden, created_dirs))

            self._run_command(step, rootfs, work, platform, identity)
        finally:
            for handle, target, hidden, created_dirs in reversed(attached):
                if target.is_dir() and not target.is_symlink():
                    _replace_tree(target, handle.path)
                    shutil.rmtree(target)
                elif target.exists() or target.is_symlink():
                    target.unlink()
                if hidden is not None:
                    hidden.rename(target)
                for directory in reversed(created_dirs):
                    if directory.is_dir() and not any(directory.iterdir()):
                        directory.rmdir()

    def _run_command(
        self,
        step: StepSchema,
        rootfs: Path,
        work: Path,
        platform: str,
        identity: str,
    ) -> None:
        """Run the command, raising StepExecutionError on failure."""
        cmd = self.compose_command(step)
        command_text = step.command_text()
        cwd = rootfs / normalize_path(step.workdir)
        cwd.mkdir(parents=True, exist_ok=True)
        log_path = work / "step.log"

        logger.info("Executing step: %s", command_text)
        started_at = datetime.now(timezone.utc)

        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {command_text}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.flush()
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=self.timeout,
                    env=self.compose_env(step, rootfs, platform),
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            message = f"Step timed out after {self.timeout} seconds"
            logger.error("%s: %s", message, command_text)
            raise StepExecutionError(
                message,
                exit_code=-1,
                code="step_timeout",
                identity=identity,
                command=command_text,
                output_tail=_tail(log_path),
            ) from e
        except OSError as e:
            message = f"Failed to execute step: {e}"
            logger.error(message)
            raise StepExecutionError(
                message,
                code="execution_error",
                identity=identity,
                command=command_text,
            ) from e

        duration = (datetime.now(timezone.utc) - started_at).total_seconds()
        output_tail = _tail(log_path)
        if output_tail:
            logger.debug("Step output:\n%s", output_tail)

        if result.returncode != 0:
            message = f"Step failed with exit code {result.returncode}"
            logger.error("%s after %.1fs: %s", message, duration, command_text)
            raise StepExecutionError(
                message,
                exit_code=result.returncode,
                code="step_failed",
                identity=identity,
                command=command_text,
                output_tail=output_tail,
            )
        logger.debug("Step finished in %.1fs", duration)


__all__ = [
    "CopyOperation",
    "Executor",
    "ShellExecutor",
    "StepExecutionError",
    "apply_copies",
]
