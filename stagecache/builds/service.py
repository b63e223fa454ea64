"""Build service module.

This module provides the high-level build API:
- run_builds(): plan, build every platform and record the history
- Cache store and executor construction from settings
- Build result export (tar archive or directory)
- Build history queries
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagecache.builds.executor import ShellExecutor
from stagecache.builds.layers import export_to_directory
from stagecache.builds.models import BuildRecord, StepRecord
from stagecache.builds.planner import BuildFailure, BuildResult, plan_build
from stagecache.builds.scheduler import BatchResult, PlatformScheduler
from stagecache.builds.store import FileCacheStore, platform_dirname
from stagecache.config import get_settings
from stagecache.db import open_database
from stagecache.types import BatchMode, BuildStatus, StepStatus

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from stagecache.builds.executor import Executor
    from stagecache.builds.store import CacheStore
    from stagecache.config import Settings
    from stagecache.graph.context import BuildContext
    from stagecache.graph.schema import StageGraphSchema

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class BuildServiceError(Exception):
    """Base error for build service operations."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


def open_store(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> FileCacheStore:
    """Open the persistent cache store configured in settings.

    Args:
        settings: Settings instance; uses default if not provided.
        session_factory: Session factory for the cache index; created
                         from settings if not provided.

    Returns:
        FileCacheStore rooted at ``settings.cache_dir``.
    """
    if settings is None:
        settings = get_settings()
    if session_factory is None:
        session_factory = open_database(settings.db_url)
    return FileCacheStore(settings.cache_dir, session_factory)


def create_executor(settings: Settings | None = None) -> ShellExecutor:
    """Create the shell executor configured in settings."""
    if settings is None:
        settings = get_settings()
    return ShellExecutor(
        shell=settings.shell,
        timeout=settings.step_timeout,
        tmp_dir=settings.tmp_dir,
    )


def _create_build_record(
    session: Session,
    graph_digest: str,
    platform: str,
    target: str,
) -> BuildRecord:
    """Create a new build record in pending state."""
    record = BuildRecord(
        graph_digest=graph_digest,
        platform=platform,
        target_stage=target,
        status=BuildStatus.PENDING.value,
        requested_at=datetime.now(),
    )
    session.add(record)
    session.flush()
    return record


def _record_outcome(
    record: BuildRecord,
    outcome: BuildResult | BuildFailure,
) -> None:
    """Copy a platform outcome into its build record."""
    for step in outcome.steps:
        record.steps.append(
            StepRecord(
                stage=step.stage,
                step_index=step.index,
                identity=step.identity,
                command=step.command,
                status=step.status.value,
                duration_seconds=step.duration_seconds,
            )
        )
    record.cache_hits = sum(1 for s in outcome.steps if s.status == StepStatus.HIT)
    record.executed_steps = sum(
        1 for s in outcome.steps if s.status == StepStatus.EXECUTED
    )

    if isinstance(outcome, BuildResult):
        record.mark_succeeded(outcome.digest)
    elif outcome.cancelled:
        record.mark_cancelled()
        record.error_message = outcome.message
    else:
        record.mark_failed(outcome.code, outcome.describe())


def run_builds(
    session: Session,
    graph: StageGraphSchema,
    context: BuildContext,
    platforms: list[str],
    store: CacheStore,
    executor: Executor | None = None,
    target: str | None = None,
    mode: BatchMode = BatchMode.FAIL_FAST,
    settings: Settings | None = None,
) -> tuple[BatchResult, list[BuildRecord]]:
    """Build a stage graph for several platforms and record the history.

    The graph is planned once before anything runs, so malformed graphs
    and unreadable build context files fail before any step executes
    and before any build record is written.

    Args:
        session: Database session for build records.
        graph: Stage graph.
        context: Build context holding copied files.
        platforms: Target platforms.
        store: Cache store.
        executor: Executor used on misses; created from settings if omitted.
        target: Target stage; defaults to the last declared stage.
        mode: What happens to other platforms when one fails.
        settings: Settings instance; uses default if not provided.

    Returns:
        Tuple of (BatchResult, build records in platform order).

    Raises:
        GraphValidationError: If the graph is malformed.
        BuildContextError: If a copied file is missing or unreadable.
        BuildServiceError: If no platform is requested.
    """
    if settings is None:
        settings = get_settings()
    unique = list(dict.fromkeys(platforms))
    if not unique:
        raise BuildServiceError(
            "At least one platform is required", code="no_platforms"
        )

    plan = plan_build(graph, context, target)
    logger.info(
        "Planned %d steps for target %s (graph %s)",
        len(plan.steps()),
        plan.target,
        plan.graph_digest[:19],
    )

    records = {
        platform: _create_build_record(session, plan.graph_digest, platform, plan.target)
        for platform in unique
    }
    for record in records.values():
        record.mark_running()
    session.commit()

    scheduler = PlatformScheduler(
        store,
        executor or create_executor(settings),
        max_concurrent_platforms=settings.max_concurrent_platforms,
        max_concurrent_steps=settings.max_concurrent_steps,
        mode=mode,
    )
    try:
        batch = scheduler.run_sync(plan, context, unique)
    except Exception as e:
        for record in records.values():
            record.mark_failed("internal_error", str(e))
        session.commit()
        raise

    for platform, outcome in batch.results.items():
        _record_outcome(records[platform], outcome)
    session.commit()

    return batch, [records[p] for p in unique]


def export_result(
    result: BuildResult,
    output_dir: Path,
    fmt: Literal["tar", "dir"] = "tar",
) -> Path:
    """Export a platform build result.

    Args:
        result: Build result.
        output_dir: Directory receiving the export.
        fmt: 'tar' writes ``<platform>.tar``; 'dir' writes a ``<platform>``
             directory tree. The platform is URL-quoted as in the
             cache store, so distinct platforms never share a name.

    Returns:
        Path of the written archive or directory.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    name = platform_dirname(result.platform)
    if fmt == "dir":
        return export_to_directory(result.filesystem, output_dir / name)

    tar_path = output_dir / f"{name}.tar"
    tar_path.write_bytes(result.to_tar())
    logger.info("Exported %s result to %s", result.platform, tar_path)
    return tar_path


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def get_build_or_none(session: Session, build_id: int) -> BuildRecord | None:
    """Get a build record by ID, or None if not found."""
    return session.get(BuildRecord, build_id)


def list_builds(
    session: Session,
    platform: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        platform: Filter by platform.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if platform is not None:
        stmt = stmt.where(BuildRecord.platform == platform)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def build_record_to_dict(
    record: BuildRecord, include_steps: bool = False
) -> dict[str, Any]:
    """Convert a build record to a JSON-serializable dictionary."""
    data: dict[str, Any] = {
        "id": record.id,
        "graph_digest": record.graph_digest,
        "platform": record.platform,
        "target_stage": record.target_stage,
        "status": record.status,
        "requested_at": record.requested_at.isoformat() if record.requested_at else None,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "result_digest": record.result_digest,
        "cache_hits": record.cache_hits,
        "executed_steps": record.executed_steps,
        "error_type": record.error_type,
        "error_message": record.error_message,
    }
    if include_steps:
        data["steps"] = [
            {
                "stage": s.stage,
                "index": s.step_index,
                "identity": s.identity,
                "command": s.command,
                "status": s.status,
                "duration_seconds": s.duration_seconds,
            }
            for s in record.steps
        ]
    return data


__all__ = [
    "BuildNotFoundError",
    "BuildServiceError",
    "build_record_to_dict",
    "create_executor",
    "export_result",
    "get_build",
    "get_build_or_none",
    "list_builds",
    "open_store",
    "run_builds",
]
