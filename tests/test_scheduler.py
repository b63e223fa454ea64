"""Tests for builds/scheduler.py module."""

from pathlib import Path

import pytest

from stagecache.builds.executor import ShellExecutor
from stagecache.builds.planner import BuildFailure, BuildResult, plan_build
from stagecache.builds.scheduler import BatchResult, PlatformScheduler
from stagecache.builds.store import MemoryCacheStore
from stagecache.graph.context import BuildContext
from stagecache.graph.io import parse_graph_data
from stagecache.graph.schema import StageGraphSchema
from stagecache.types import BatchMode

AMD64 = "linux/amd64"
ARM64 = "linux/arm64"


def platform_graph(run: str = 'printf "$TARGETPLATFORM" > platform') -> StageGraphSchema:
    """Single stage graph whose output depends on the platform."""
    return parse_graph_data(
        {
            "stages": [
                {
                    "name": "app",
                    "steps": [
                        {
                            "run": "printf warm > cache/marker",
                            "mounts": [{"cache": "deps", "target": "/cache"}],
                        },
                        {"run": run},
                    ],
                }
            ]
        }
    )


class RecordingStore(MemoryCacheStore):
    """Memory store recording the namespace of every lookup."""

    def __init__(self, mount_root: Path) -> None:
        super().__init__(mount_root=mount_root)
        self.lookups: list[tuple[str, str]] = []

    def _read(self, platform, key):
        self.lookups.append((platform, key))
        return super()._read(platform, key)


@pytest.fixture
def store(tmp_path: Path):
    """Recording store with mount slots under tmp_path."""
    s = RecordingStore(tmp_path / "mounts")
    yield s
    s.close()


@pytest.fixture
def executor(tmp_path: Path) -> ShellExecutor:
    """Shell executor with scratch roots under tmp_path."""
    return ShellExecutor(timeout=30, tmp_dir=tmp_path / "scratch")


def run_batch(
    graph: StageGraphSchema,
    context_dir: Path,
    store,
    executor,
    platforms: list[str],
    **kwargs,
) -> BatchResult:
    """Plan once and build every platform."""
    context = BuildContext(context_dir)
    plan = plan_build(graph, context)
    scheduler = PlatformScheduler(store, executor, **kwargs)
    return scheduler.run_sync(plan, context, platforms)


class TestNamespaces:
    """Tests for per-platform isolation."""

    def test_platforms_build_independently(
        self, context_dir: Path, store, executor
    ) -> None:
        """Each platform resolves its own entries and gets its own result."""
        batch = run_batch(platform_graph(), context_dir, store, executor, [AMD64, ARM64])
        assert batch.all_succeeded()
        amd64 = batch.succeeded[AMD64]
        arm64 = batch.succeeded[ARM64]
        assert amd64.filesystem.read_bytes("/platform") == b"linux/amd64"
        assert arm64.filesystem.read_bytes("/platform") == b"linux/arm64"
        assert amd64.executed_steps == 2
        assert arm64.executed_steps == 2
        assert len(store.list_entries(AMD64)) == 2
        assert len(store.list_entries(ARM64)) == 2

    def test_same_identity_separate_entries(
        self, context_dir: Path, store, executor
    ) -> None:
        """The same identity is looked up once per platform namespace."""
        run_batch(platform_graph(), context_dir, store, executor, [AMD64, ARM64])
        keys_by_platform: dict[str, set[str]] = {}
        for platform, key in store.lookups:
            keys_by_platform.setdefault(platform, set()).add(key)
        assert keys_by_platform[AMD64] == keys_by_platform[ARM64]

    def test_mount_caches_per_platform(self, context_dir: Path, store, executor) -> None:
        """Mount caches with the same name are separate per platform."""
        run_batch(platform_graph(), context_dir, store, executor, [AMD64, ARM64])
        slots = {(m.platform, m.name) for m in store.list_mount_caches()}
        assert slots == {(AMD64, "deps"), (ARM64, "deps")}

    def test_warm_batch(self, context_dir: Path, store, executor) -> None:
        """A repeated batch is served entirely from cache."""
        run_batch(platform_graph(), context_dir, store, executor, [AMD64, ARM64])
        batch = run_batch(platform_graph(), context_dir, store, executor, [AMD64, ARM64])
        assert all(r.cache_hits == 2 for r in batch.succeeded.values())

    def test_duplicate_platforms(self, context_dir: Path, store, executor) -> None:
        """Repeated platforms are built once."""
        batch = run_batch(platform_graph(), context_dir, store, executor, [AMD64, AMD64])
        assert list(batch.results) == [AMD64]

    def test_no_platforms(self, context_dir: Path, store, executor) -> None:
        """An empty platform list is rejected."""
        with pytest.raises(ValueError):
            run_batch(platform_graph(), context_dir, store, executor, [])


class TestFailurePolicy:
    """Tests for fail-fast and best-effort batches."""

    FAIL_ON_ARM = 'test "$TARGETPLATFORM" != linux/arm64'

    def test_fail_fast_cancels_others(self, context_dir: Path, store, executor) -> None:
        """In fail-fast mode one failure cancels platforms not yet finished."""
        batch = run_batch(
            platform_graph(self.FAIL_ON_ARM),
            context_dir,
            store,
            executor,
            [ARM64, AMD64],
            max_concurrent_platforms=1,
            mode=BatchMode.FAIL_FAST,
        )
        assert not batch.all_succeeded()
        arm64 = batch.results[ARM64]
        amd64 = batch.results[AMD64]
        assert isinstance(arm64, BuildFailure)
        assert not arm64.cancelled
        assert arm64.stage == "app"
        assert arm64.step_index == 1
        assert isinstance(amd64, BuildFailure)
        assert amd64.cancelled

    def test_best_effort_continues(self, context_dir: Path, store, executor) -> None:
        """In best-effort mode other platforms still finish."""
        batch = run_batch(
            platform_graph(self.FAIL_ON_ARM),
            context_dir,
            store,
            executor,
            [ARM64, AMD64],
            max_concurrent_platforms=1,
            mode=BatchMode.BEST_EFFORT,
        )
        assert isinstance(batch.results[ARM64], BuildFailure)
        assert isinstance(batch.results[AMD64], BuildResult)
        assert list(batch.failed) == [ARM64]

    def test_to_dict(self, context_dir: Path, store, executor) -> None:
        """Batch dictionaries report overall success and each platform."""
        batch = run_batch(
            platform_graph(self.FAIL_ON_ARM),
            context_dir,
            store,
            executor,
            [ARM64, AMD64],
            mode=BatchMode.BEST_EFFORT,
        )
        data = batch.to_dict()
        assert data["success"] is False
        assert data["mode"] == "best-effort"
        assert data["platforms"][ARM64]["success"] is False
        assert data["platforms"][AMD64]["success"] is True
