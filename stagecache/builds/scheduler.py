"""Multi-platform build scheduling.

Runs one Planner per requested platform. Each planner receives a cache
view namespaced by its platform, so platforms never share cache entries
or mount caches. Platforms run concurrently up to a configured bound.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stagecache.builds.planner import (
    BuildFailedError,
    BuildFailure,
    BuildResult,
    Planner,
)
from stagecache.types import BatchMode

if TYPE_CHECKING:
    from stagecache.builds.executor import Executor
    from stagecache.builds.planner import BuildPlan
    from stagecache.builds.store import CacheStore
    from stagecache.graph.context import BuildContext

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of a multi-platform build.

    Attributes:
        target: Target stage name.
        graph_digest: Digest of the stage graph description.
        mode: Failure policy the batch ran with.
        results: Per-platform result or failure, in request order.
    """

    target: str
    graph_digest: str
    mode: BatchMode
    results: dict[str, BuildResult | BuildFailure] = field(default_factory=dict)

    @property
    def succeeded(self) -> dict[str, BuildResult]:
        """Successful platform builds."""
        return {p: r for p, r in self.results.items() if isinstance(r, BuildResult)}

    @property
    def failed(self) -> dict[str, BuildFailure]:
        """Failed or cancelled platform builds."""
        return {p: r for p, r in self.results.items() if isinstance(r, BuildFailure)}

    def all_succeeded(self) -> bool:
        """Check whether every platform produced a result."""
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "success": self.all_succeeded(),
            "target": self.target,
            "graph_digest": self.graph_digest,
            "mode": self.mode.value,
            "platforms": {p: r.to_dict() for p, r in self.results.items()},
        }


class PlatformScheduler:
    """Runs a build plan for several platforms.

    Attributes:
        store: Cache store shared by all platforms (namespaced per platform).
        executor: Executor used on cache misses.
        max_concurrent_platforms: Upper bound on platforms building at once.
        max_concurrent_steps: Per-platform upper bound on concurrent steps.
        mode: What happens to other platforms when one fails.
    """

    def __init__(
        self,
        store: CacheStore,
        executor: Executor,
        max_concurrent_platforms: int = 2,
        max_concurrent_steps: int = 4,
        mode: BatchMode = BatchMode.FAIL_FAST,
    ) -> None:
        self.store = store
        self.executor = executor
        self.max_concurrent_platforms = max_concurrent_platforms
        self.max_concurrent_steps = max_concurrent_steps
        self.mode = mode

    async def run(
        self,
        plan: BuildPlan,
        context: BuildContext,
        platforms: list[str],
    ) -> BatchResult:
        """Build a plan for every requested platform.

        Args:
            plan: Build plan shared by all platforms.
            context: Build context holding copied files.
            platforms: Target platforms; duplicates are ignored.

        Returns:
            BatchResult with one entry per platform.

        Raises:
            ValueError: If no platform is requested.
        """
        unique = list(dict.fromkeys(platforms))
        if not unique:
            raise ValueError("At least one platform is required")

        planners = {
            platform: Planner(
                plan,
                context,
                self.store.namespace(platform),
                self.executor,
                self.max_concurrent_steps,
            )
            for platform in unique
        }
        semaphore = asyncio.Semaphore(self.max_concurrent_platforms)
        batch = BatchResult(
            target=plan.target, graph_digest=plan.graph_digest, mode=self.mode
        )

        async def build(platform: str) -> BuildResult:
            async with semaphore:
                try:
                    return await planners[platform].run()
                except BuildFailedError as e:
                    if self.mode == BatchMode.FAIL_FAST and not e.failure.cancelled:
                        for other, planner in planners.items():
                            if other != platform:
                                planner.cancel(f"build failed on {platform}")
                    raise

        logger.info(
            "Building %s for %d platform(s): %s",
            plan.target,
            len(unique),
            ", ".join(unique),
        )
        outcomes = await asyncio.gather(
            *(build(platform) for platform in unique), return_exceptions=True
        )

        for platform, outcome in zip(unique, outcomes, strict=True):
            if isinstance(outcome, BuildFailedError):
                batch.results[platform] = outcome.failure
                if outcome.failure.cancelled:
                    logger.warning("[%s] Cancelled", platform)
                else:
                    logger.error("Build failed: %s", outcome.failure.describe())
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batch.results[platform] = outcome

        return batch

    def run_sync(
        self,
        plan: BuildPlan,
        context: BuildContext,
        platforms: list[str],
    ) -> BatchResult:
        """Synchronous wrapper around :meth:`run`."""
        return asyncio.run(self.run(plan, context, platforms))


__all__ = ["BatchResult", "PlatformScheduler"]
