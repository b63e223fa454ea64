"""Build planning and cache-aware execution for one platform.

This module provides:
- plan_build(): validate a stage graph and compute every step identity
- Planner: resolve planned steps against a platform cache view, running
  the executor on misses and storing its output
- run_build(): synchronous wrapper around Planner.run()

Identities are computed once, before anything executes, in declaration
order (stages, then steps within a stage). The same plan is reused for
every platform. During execution each stage runs as its own task;
before each step it waits on the completion events of the stages that
step consumes, so independent stages proceed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stagecache.builds.executor import CopyOperation, StepExecutionError
from stagecache.builds.hasher import SCRATCH_IDENTITY, StepInputs, identify_step
from stagecache.builds.layers import Filesystem, Layer, LayerFormatError
from stagecache.builds.store import CacheEntry, CacheStoreError
from stagecache.graph.context import BuildContextError
from stagecache.graph.io import graph_digest
from stagecache.graph.schema import FileSourceSchema, StageSourceSchema
from stagecache.types import OutputKind, StepStatus

if TYPE_CHECKING:
    from stagecache.builds.executor import Executor
    from stagecache.builds.store import PlatformCacheView
    from stagecache.graph.context import BuildContext
    from stagecache.graph.schema import StageGraphSchema, StepSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedStep:
    """A step with its computed identity.

    Attributes:
        stage: Stage name.
        index: Position within the stage.
        step: Step definition.
        identity: Step identity.
        inputs: Canonical inputs the identity was computed from.
    """

    stage: str
    index: int
    step: StepSchema
    identity: str
    inputs: StepInputs

    @property
    def label(self) -> str:
        """Human readable step position."""
        name = f" ({self.step.name})" if self.step.name else ""
        return f"{self.stage}[{self.index}]{name}"

    def source_stages(self) -> list[str]:
        """Return the stages this step copies from, without duplicates."""
        names: list[str] = []
        for source in self.step.sources:
            if isinstance(source, StageSourceSchema) and source.from_stage not in names:
                names.append(source.from_stage)
        return names

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "stage": self.stage,
            "index": self.index,
            "name": self.step.name,
            "identity": self.identity,
            "command": self.step.command_text(),
            "parent": self.inputs.parent,
            "output": self.step.output.value,
        }


@dataclass(frozen=True)
class PlannedStage:
    """A stage with its planned steps.

    Attributes:
        name: Stage name.
        base: Base stage name, or None for an empty filesystem.
        identity: Identity of the stage's resulting filesystem.
        steps: Planned steps in declaration order.
    """

    name: str
    base: str | None
    identity: str
    steps: tuple[PlannedStep, ...]


@dataclass(frozen=True)
class BuildPlan:
    """Identities of every step needed to build a target stage.

    Attributes:
        target: Target stage name.
        graph_digest: Digest of the stage graph description.
        stages: Required stages in declaration order.
    """

    target: str
    graph_digest: str
    stages: tuple[PlannedStage, ...]

    def steps(self) -> list[PlannedStep]:
        """Return all planned steps in declaration order."""
        return [s for stage in self.stages for s in stage.steps]

    def get_stage(self, name: str) -> PlannedStage:
        """Return a planned stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "target": self.target,
            "graph_digest": self.graph_digest,
            "stages": [
                {
                    "name": stage.name,
                    "base": stage.base,
                    "identity": stage.identity,
                    "steps": [s.to_dict() for s in stage.steps],
                }
                for stage in self.stages
            ],
        }


def plan_build(
    graph: StageGraphSchema,
    context: BuildContext,
    target: str | None = None,
) -> BuildPlan:
    """Validate a stage graph and compute every required step identity.

    Args:
        graph: Stage graph.
        context: Build context holding copied files.
        target: Target stage; defaults to the last declared stage.

    Returns:
        BuildPlan covering the target and the stages it needs.

    Raises:
        GraphValidationError: If the graph is malformed.
        BuildContextError: If a copied file is missing or unreadable.
    """
    graph.validate_references()
    required = graph.required_stages(target)

    stage_identities: dict[str, str] = {}
    planned_stages: list[PlannedStage] = []
    for stage in required:
        parent = stage_identities[stage.base] if stage.base else SCRATCH_IDENTITY
        steps: list[PlannedStep] = []
        for index, step in enumerate(stage.steps):
            for source in step.sources:
                if (
                    isinstance(source, FileSourceSchema)
                    and source.dest == "/"
                    and context.is_file(source.file)
                ):
                    raise BuildContextError(
                        f"Cannot copy single file {source.file} to the image root "
                        f"in {stage.name}[{index}]",
                        source=source.file,
                        code="invalid_destination",
                    )
            identity, inputs = identify_step(step, parent, context, stage_identities)
            steps.append(PlannedStep(stage.name, index, step, identity, inputs))
            parent = identity
        stage_identities[stage.name] = parent
        planned_stages.append(
            PlannedStage(stage.name, stage.base, parent, tuple(steps))
        )
        logger.debug("Planned stage %s: %d steps", stage.name, len(steps))

    return BuildPlan(
        target=required[-1].name if target is None else target,
        graph_digest=graph_digest(graph),
        stages=tuple(planned_stages),
    )


@dataclass
class StepResult:
    """Outcome of one step in a platform build.

    Attributes:
        stage: Stage name.
        index: Position within the stage.
        identity: Step identity.
        command: Printable command.
        status: Resolution status.
        duration_seconds: Time spent resolving the step.
        cache_write_failed: True if the output could not be stored.
    """

    stage: str
    index: int
    identity: str
    command: str
    status: StepStatus = StepStatus.PENDING
    duration_seconds: float | None = None
    cache_write_failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "stage": self.stage,
            "index": self.index,
            "identity": self.identity,
            "command": self.command,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "cache_write_failed": self.cache_write_failed,
        }


@dataclass
class BuildResult:
    """A finished platform build.

    Attributes:
        platform: Target platform.
        target: Target stage name.
        filesystem: Resulting filesystem.
        digest: Digest of the filesystem's reproducible archive.
        steps: Per-step outcomes in declaration order.
    """

    platform: str
    target: str
    filesystem: Filesystem
    digest: str
    steps: list[StepResult] = field(default_factory=list)

    @property
    def cache_hits(self) -> int:
        """Number of steps resolved from cache."""
        return sum(1 for s in self.steps if s.status == StepStatus.HIT)

    @property
    def executed_steps(self) -> int:
        """Number of steps run by the executor."""
        return sum(1 for s in self.steps if s.status == StepStatus.EXECUTED)

    def to_tar(self) -> bytes:
        """Return the resulting filesystem as a reproducible tar archive."""
        return self.filesystem.to_tar()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "success": True,
            "platform": self.platform,
            "target": self.target,
            "digest": self.digest,
            "entries": len(self.filesystem),
            "cache_hits": self.cache_hits,
            "executed_steps": self.executed_steps,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class BuildFailure:
    """Structured report of a failed or cancelled platform build.

    Attributes:
        platform: Platform whose build failed.
        code: Stable error code.
        message: Error message.
        stage: Stage of the failing step (None if no step failed).
        step_index: Index of the failing step.
        identity: Identity of the failing step.
        command: Command of the failing step.
        exit_code: Exit code of the failing command, if it ran.
        output_tail: Last lines of the failing command's output.
        steps: Per-step outcomes in declaration order.
    """

    platform: str
    code: str
    message: str
    stage: str | None = None
    step_index: int | None = None
    identity: str | None = None
    command: str | None = None
    exit_code: int | None = None
    output_tail: str | None = None
    steps: list[StepResult] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        """True if the build was stopped without a step of its own failing."""
        return self.stage is None and self.code == "cancelled"

    def describe(self) -> str:
        """One line summary naming the platform and failing step."""
        if self.stage is None:
            return f"[{self.platform}] {self.message}"
        return (
            f"[{self.platform}] {self.stage}[{self.step_index}] failed: "
            f"{self.message} (command: {self.command})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "success": False,
            "platform": self.platform,
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
            "step_index": self.step_index,
            "identity": self.identity,
            "command": self.command,
            "exit_code": self.exit_code,
            "output_tail": self.output_tail,
            "steps": [s.to_dict() for s in self.steps],
        }


class BuildFailedError(Exception):
    """Raised when a platform build does not produce a result."""

    def __init__(self, failure: BuildFailure) -> None:
        super().__init__(failure.describe())
        self.failure = failure
        self.code = failure.code


class Planner:
    """Resolves a build plan for one platform.

    The planner only sees a platform-bound cache view, so its logic does
    not depend on which platform it builds.

    Attributes:
        plan: Build plan shared by all platforms.
        context: Build context holding copied files.
        cache: Cache view of this planner's platform.
        executor: Executor used on cache misses.
        max_concurrent_steps: Upper bound on steps resolving at once.
    """

    def __init__(
        self,
        plan: BuildPlan,
        context: BuildContext,
        cache: PlatformCacheView,
        executor: Executor,
        max_concurrent_steps: int = 4,
    ) -> None:
        self.plan = plan
        self.context = context
        self.cache = cache
        self.executor = executor
        self.max_concurrent_steps = max_concurrent_steps
        self._failure: BuildFailure | None = None
        self._cancel_reason: str | None = None
        self._results: dict[tuple[str, int], StepResult] = {
            (s.stage, s.index): StepResult(
                stage=s.stage,
                index=s.index,
                identity=s.identity,
                command=s.step.command_text(),
            )
            for s in plan.steps()
        }

    @property
    def platform(self) -> str:
        """Platform this planner builds."""
        return self.cache.platform

    def cancel(self, reason: str) -> None:
        """Stop starting new steps; steps already running finish."""
        if self._cancel_reason is None:
            self._cancel_reason = reason
            logger.info("[%s] Cancelling build: %s", self.platform, reason)

    def _should_stop(self) -> bool:
        return self._failure is not None or self._cancel_reason is not None

    async def run(self) -> BuildResult:
        """Resolve every planned step.

        Returns:
            BuildResult for the target stage.

        Raises:
            BuildFailedError: If a step fails or the build is cancelled.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_steps)
        done = {stage.name: asyncio.Event() for stage in self.plan.stages}
        filesystems: dict[str, Filesystem] = {}

        logger.info(
            "[%s] Building %s (%d steps)",
            self.platform,
            self.plan.target,
            len(self._results),
        )
        await asyncio.gather(
            *(
                self._run_stage(stage, semaphore, done, filesystems)
                for stage in self.plan.stages
            )
        )

        steps = [self._results[(s.stage, s.index)] for s in self.plan.steps()]
        if self._failure is not None:
            self._failure.steps = steps
            raise BuildFailedError(self._failure)
        if self.plan.target not in filesystems:
            raise BuildFailedError(
                BuildFailure(
                    platform=self.platform,
                    code="cancelled",
                    message=f"Build cancelled: {self._cancel_reason}",
                    steps=steps,
                )
            )

        filesystem = filesystems[self.plan.target]
        result = BuildResult(
            platform=self.platform,
            target=self.plan.target,
            filesystem=filesystem,
            digest=filesystem.digest(),
            steps=steps,
        )
        logger.info(
            "[%s] Build finished: %d cached, %d executed, digest %s",
            self.platform,
            result.cache_hits,
            result.executed_steps,
            result.digest[:19],
        )
        return result

    async def _run_stage(
        self,
        stage: PlannedStage,
        semaphore: asyncio.Semaphore,
        done: dict[str, asyncio.Event],
        filesystems: dict[str, Filesystem],
    ) -> None:
        """Resolve a stage's steps in order, then signal completion."""
        try:
            if stage.base is not None:
                await done[stage.base].wait()
                if stage.base not in filesystems:
                    self._cancel_remaining(stage, 0)
                    return
                fs = filesystems[stage.base]
            else:
                fs = Filesystem()

            for planned in stage.steps:
                sources = planned.source_stages()
                for name in sources:
                    await done[name].wait()
                if any(name not in filesystems for name in sources):
                    self._cancel_remaining(stage, planned.index)
                    return

                async with semaphore:
                    if self._should_stop():
                        self._cancel_remaining(stage, planned.index)
                        return
                    layer = await self._resolve_step(planned, fs, filesystems)
                if layer is None:
                    self._cancel_remaining(stage, planned.index + 1)
                    return
                if planned.step.output == OutputKind.LAYER:
                    fs = fs.apply(layer)

            filesystems[stage.name] = fs
        finally:
            done[stage.name].set()

    def _cancel_remaining(self, stage: PlannedStage, start: int) -> None:
        for planned in stage.steps[start:]:
            result = self._results[(planned.stage, planned.index)]
            if result.status == StepStatus.PENDING:
                result.status = StepStatus.CANCELLED

    def _resolve_copies(
        self,
        planned: PlannedStep,
        filesystems: dict[str, Filesystem],
    ) -> list[CopyOperation]:
        """Load a step's copy sources.

        Raises:
            StepExecutionError: If a copied stage path does not exist.
            BuildContextError: If a copied file cannot be read.
        """
        copies: list[CopyOperation] = []
        for source in planned.step.sources:
            if isinstance(source, FileSourceSchema):
                copies.append(
                    CopyOperation(self.context.load(source.file), source.dest)
                )
                continue
            try:
                entries = filesystems[source.from_stage].subtree(source.path)
            except FileNotFoundError:
                raise StepExecutionError(
                    f"Path {source.path} not found in stage {source.from_stage}",
                    code="copy_source_missing",
                    identity=planned.identity,
                    command=planned.step.command_text(),
                ) from None
            copies.append(CopyOperation(entries, source.effective_dest))
        return copies

    async def _resolve_step(
        self,
        planned: PlannedStep,
        fs: Filesystem,
        filesystems: dict[str, Filesystem],
    ) -> Layer | None:
        """Resolve one step from cache or by execution.

        Returns:
            The step's layer, or None if it failed.
        """
        result = self._results[(planned.stage, planned.index)]
        started = time.monotonic()

        layer = await self._lookup(planned)
        if layer is not None:
            result.status = StepStatus.HIT
            result.duration_seconds = time.monotonic() - started
            logger.info("[%s] CACHED %s", self.platform, planned.label)
            return layer

        logger.info("[%s] RUN %s: %s", self.platform, planned.label, result.command)
        try:
            copies = self._resolve_copies(planned, filesystems)
            mounts = {
                m.cache: self.cache.get_mount_cache(m.cache) for m in planned.step.mounts
            }
            layer = await asyncio.to_thread(
                self.executor.run,
                planned.step,
                fs,
                mounts,
                copies,
                self.platform,
                planned.identity,
            )
        except (StepExecutionError, BuildContextError, CacheStoreError) as e:
            self._fail_step(planned, started, e)
            return None
        except Exception as e:
            logger.exception(
                "[%s] Executor raised for %s", self.platform, planned.label
            )
            error = StepExecutionError(
                f"Executor error: {e}",
                code="execution_error",
                identity=planned.identity,
                command=planned.step.command_text(),
            )
            self._fail_step(planned, started, error)
            return None

        entry = CacheEntry.from_layer(
            layer if planned.step.output == OutputKind.LAYER else None
        )
        if not await asyncio.to_thread(self.cache.put, planned.identity, entry):
            result.cache_write_failed = True
        result.status = StepStatus.EXECUTED
        result.duration_seconds = time.monotonic() - started
        return layer

    async def _lookup(self, planned: PlannedStep) -> Layer | None:
        """Return the cached layer of a step, or None on a miss."""
        entry = await asyncio.to_thread(self.cache.get, planned.identity)
        if entry is None:
            return None
        try:
            return entry.layer()
        except LayerFormatError as e:
            logger.warning(
                "[%s] Unreadable cache entry for %s, treating as miss: %s",
                self.platform,
                planned.label,
                e,
            )
            return None

    def _fail_step(
        self,
        planned: PlannedStep,
        started: float,
        error: StepExecutionError | BuildContextError | CacheStoreError,
    ) -> None:
        result = self._results[(planned.stage, planned.index)]
        result.status = StepStatus.FAILED
        result.duration_seconds = time.monotonic() - started
        self._record_failure(planned, error)

    def _record_failure(
        self,
        planned: PlannedStep,
        error: StepExecutionError | BuildContextError | CacheStoreError,
    ) -> None:
        exit_code = getattr(error, "exit_code", None)
        output_tail = getattr(error, "output_tail", None)
        logger.error(
            "[%s] Step %s failed: %s", self.platform, planned.label, error
        )
        if self._failure is not None:
            return
        self._failure = BuildFailure(
            platform=self.platform,
            code=error.code,
            message=str(error),
            stage=planned.stage,
            step_index=planned.index,
            identity=planned.identity,
            command=planned.step.command_text(),
            exit_code=exit_code,
            output_tail=output_tail,
        )


def run_build(
    plan: BuildPlan,
    context: BuildContext,
    cache: PlatformCacheView,
    executor: Executor,
    max_concurrent_steps: int = 4,
) -> BuildResult:
    """Build one platform synchronously.

    Raises:
        BuildFailedError: If a step fails.
    """
    planner = Planner(plan, context, cache, executor, max_concurrent_steps)
    return asyncio.run(planner.run())


__all__ = [
    "BuildFailedError",
    "BuildFailure",
    "BuildPlan",
    "BuildResult",
    "PlannedStage",
    "PlannedStep",
    "Planner",
    "StepResult",
    "plan_build",
    "run_build",
]
