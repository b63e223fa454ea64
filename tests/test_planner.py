"""Tests for builds/planner.py module."""

import asyncio
import threading
from pathlib import Path
from typing import Any

import pytest

from stagecache.builds.executor import ShellExecutor
from stagecache.builds.layers import Filesystem
from stagecache.builds.planner import (
    BuildFailedError,
    BuildResult,
    Planner,
    plan_build,
    run_build,
)
from stagecache.builds.store import CacheEntry, MemoryCacheStore
from stagecache.graph.context import BuildContext, BuildContextError
from stagecache.graph.io import parse_graph_data
from stagecache.graph.schema import GraphValidationError, StageGraphSchema
from stagecache.types import EntryKind, StepStatus

PLATFORM = "linux/amd64"

INSTALL = (
    "cp src/manifest var/cache/pkg/downloaded && "
    "mkdir -p deps && cp src/manifest deps/installed"
)
COMPILE = "mkdir -p out && cat src/source deps/installed > out/app"


class CountingExecutor(ShellExecutor):
    """Shell executor recording every command it runs."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.commands: list[str] = []
        self._lock = threading.Lock()

    def run(self, step, base, mounts, copies=(), platform="", identity=""):
        with self._lock:
            self.commands.append(step.command_text())
        return super().run(step, base, mounts, copies, platform, identity)


def app_graph() -> StageGraphSchema:
    """Two-stage graph: install and compile, then copy into a runtime stage."""
    return parse_graph_data(
        {
            "stages": [
                {
                    "name": "build",
                    "steps": [
                        {
                            "name": "install",
                            "run": INSTALL,
                            "sources": [{"file": "manifest", "dest": "/src/manifest"}],
                            "mounts": [{"cache": "pkg", "target": "/var/cache/pkg"}],
                        },
                        {
                            "name": "compile",
                            "run": COMPILE,
                            "sources": [{"file": "source", "dest": "/src/source"}],
                        },
                    ],
                },
                {
                    "name": "runtime",
                    "steps": [
                        {
                            "run": "test -f app/app",
                            "sources": [
                                {"from_stage": "build", "path": "/out", "dest": "/app"}
                            ],
                        }
                    ],
                },
            ]
        }
    )


@pytest.fixture
def store(tmp_path: Path):
    """In-memory store with mount slots under tmp_path."""
    s = MemoryCacheStore(mount_root=tmp_path / "mounts")
    yield s
    s.close()


@pytest.fixture
def executor(tmp_path: Path) -> CountingExecutor:
    """Counting executor with scratch roots under tmp_path."""
    return CountingExecutor(timeout=30, tmp_dir=tmp_path / "scratch")


def build(
    graph: StageGraphSchema,
    context_dir: Path,
    store: MemoryCacheStore,
    executor: ShellExecutor,
    target: str | None = None,
    **kwargs: Any,
) -> BuildResult:
    """Plan and build one platform with a fresh build context."""
    context = BuildContext(context_dir)
    plan = plan_build(graph, context, target)
    return run_build(plan, context, store.namespace(PLATFORM), executor, **kwargs)


def statuses(result: BuildResult) -> dict[str, StepStatus]:
    """Map step positions to their status."""
    return {f"{s.stage}[{s.index}]": s.status for s in result.steps}


class TestPlanBuild:
    """Tests for plan_build."""

    def test_plan_covers_all_steps(self, context_dir: Path) -> None:
        """Every step of the required stages is planned in order."""
        plan = plan_build(app_graph(), BuildContext(context_dir))
        assert plan.target == "runtime"
        assert [s.label for s in plan.steps()] == [
            "build[0] (install)",
            "build[1] (compile)",
            "runtime[0]",
        ]

    def test_identities_chain(self, context_dir: Path) -> None:
        """Each step's parent is the previous step's identity."""
        plan = plan_build(app_graph(), BuildContext(context_dir))
        install, compile_, _ = plan.steps()
        assert compile_.inputs.parent == install.identity
        assert plan.get_stage("build").identity == compile_.identity

    def test_plan_is_stable(self, context_dir: Path) -> None:
        """Planning twice gives the same identities."""
        a = plan_build(app_graph(), BuildContext(context_dir))
        b = plan_build(app_graph(), BuildContext(context_dir))
        assert [s.identity for s in a.steps()] == [s.identity for s in b.steps()]
        assert a.to_dict() == b.to_dict()

    def test_target_limits_stages(self, context_dir: Path) -> None:
        """An explicit target plans only what it needs."""
        plan = plan_build(app_graph(), BuildContext(context_dir), target="build")
        assert [s.name for s in plan.stages] == ["build"]

    def test_missing_context_file(self, context_dir: Path) -> None:
        """Planning fails before execution when a copied file is missing."""
        (context_dir / "source").unlink()
        with pytest.raises(BuildContextError) as exc_info:
            plan_build(app_graph(), BuildContext(context_dir))
        assert exc_info.value.code == "source_not_found"

    def test_file_to_root_rejected(self, context_dir: Path) -> None:
        """Copying a single file onto the image root is rejected."""
        graph = parse_graph_data(
            {
                "stages": [
                    {
                        "name": "a",
                        "steps": [
                            {"run": "true", "sources": [{"file": "manifest", "dest": "/"}]}
                        ],
                    }
                ]
            }
        )
        with pytest.raises(BuildContextError) as exc_info:
            plan_build(graph, BuildContext(context_dir))
        assert exc_info.value.code == "invalid_destination"

    def test_source_stages(self, context_dir: Path) -> None:
        """Copy source stages are listed once, in declaration order."""
        graph = parse_graph_data(
            {
                "stages": [
                    {"name": "a", "steps": [{"run": "mkdir x y"}]},
                    {"name": "b", "steps": [{"run": "true"}]},
                    {
                        "name": "c",
                        "steps": [
                            {
                                "run": "true",
                                "sources": [
                                    {"from_stage": "b"},
                                    {"file": "manifest", "dest": "/manifest"},
                                    {"from_stage": "a", "path": "/x"},
                                    {"from_stage": "b", "dest": "/again"},
                                    {"from_stage": "a", "path": "/y"},
                                ],
                            }
                        ],
                    },
                ]
            }
        )
        plan = plan_build(graph, BuildContext(context_dir))
        (step,) = plan.get_stage("c").steps
        assert step.source_stages() == ["b", "a"]
        assert plan.get_stage("a").steps[0].source_stages() == []

    def test_unknown_target(self, context_dir: Path) -> None:
        """Unknown targets are rejected."""
        with pytest.raises(GraphValidationError):
            plan_build(app_graph(), BuildContext(context_dir), target="nope")


class TestCaching:
    """Tests for cache reuse across builds."""

    def test_cold_warm_and_partial_rebuild(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """A warm build runs nothing; editing one file reruns only its dependents."""
        first = build(app_graph(), context_dir, store, executor)
        assert len(executor.commands) == 3
        assert first.executed_steps == 3

        executor.commands.clear()
        second = build(app_graph(), context_dir, store, executor)
        assert executor.commands == []
        assert second.cache_hits == 3
        assert second.digest == first.digest

        (context_dir / "source").write_text("print('changed')\n")
        executor.commands.clear()
        third = build(app_graph(), context_dir, store, executor)
        assert executor.commands == [COMPILE, "test -f app/app"]
        assert statuses(third) == {
            "build[0]": StepStatus.HIT,
            "build[1]": StepStatus.EXECUTED,
            "runtime[0]": StepStatus.EXECUTED,
        }
        assert third.filesystem.read_bytes("/app/app").startswith(
            b"print('changed')"
        )

    def test_result_filesystem(self, context_dir: Path, store, executor) -> None:
        """The target's filesystem holds the copied artifacts only."""
        result = build(app_graph(), context_dir, store, executor)
        assert result.filesystem.paths() == ["app", "app/app"]
        assert result.filesystem.read_bytes("/app/app") == (
            b"print('hello')\nrequests==2.31\n"
        )

    def test_mount_cache_persists(self, context_dir: Path, store, executor) -> None:
        """Mount writes survive in the slot but never enter the image."""
        result = build(app_graph(), context_dir, store, executor, target="build")
        handle = store.get_mount_cache(PLATFORM, "pkg")
        assert (handle.path / "downloaded").read_text() == "requests==2.31\n"
        assert "/var/cache/pkg/downloaded" not in result.filesystem
        assert "/deps/installed" in result.filesystem

    def test_mount_content_does_not_invalidate(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """Changing mount cache content keeps steps cached."""
        build(app_graph(), context_dir, store, executor)
        handle = store.get_mount_cache(PLATFORM, "pkg")
        (handle.path / "extra").write_text("more")
        executor.commands.clear()
        build(app_graph(), context_dir, store, executor)
        assert executor.commands == []

    def test_corrupt_entry_is_miss(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """An undecodable cached layer is rebuilt."""
        plan = plan_build(app_graph(), BuildContext(context_dir), target="build")
        install = plan.steps()[0]
        store.put(
            PLATFORM,
            install.identity,
            CacheEntry(kind=EntryKind.LAYER, blob=b"not a tar archive" * 64),
        )
        result = build(app_graph(), context_dir, store, executor, target="build")
        assert statuses(result)["build[0]"] == StepStatus.EXECUTED

    def test_whiteout_lookalike_survives_warm_build(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """Files named like whiteouts are restored from cache unchanged."""
        graph = parse_graph_data(
            {
                "stages": [
                    {
                        "name": "app",
                        "steps": [
                            {"run": "mkdir -p d && echo x > d/foo && echo y > d/.wh.foo"}
                        ],
                    }
                ]
            }
        )
        cold = build(graph, context_dir, store, executor)
        warm = build(graph, context_dir, store, executor)
        assert warm.cache_hits == 1
        assert cold.filesystem.paths() == ["d", "d/.wh.foo", "d/foo"]
        assert warm.filesystem.paths() == cold.filesystem.paths()
        assert warm.digest == cold.digest

    def test_non_utf8_symlink_survives_warm_build(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """Symlink targets that are not UTF-8 build and reuse cleanly."""
        graph = parse_graph_data(
            {"stages": [{"name": "app", "steps": [{"run": "ln -s \"$(printf 'a\\377')\" link"}]}]}
        )
        cold = build(graph, context_dir, store, executor)
        warm = build(graph, context_dir, store, executor)
        assert cold.filesystem.get("/link").data == b"a\xff"
        assert warm.cache_hits == 1
        assert warm.digest == cold.digest

    def test_cache_write_failure_is_not_fatal(
        self, context_dir: Path, tmp_path: Path, executor
    ) -> None:
        """Builds succeed when outputs cannot be stored."""

        class ReadOnlyStore(MemoryCacheStore):
            def _write(self, platform, key, entry):
                raise OSError("read-only file system")

        store = ReadOnlyStore(mount_root=tmp_path / "ro-mounts")
        result = build(app_graph(), context_dir, store, executor)
        assert result.executed_steps == 3
        assert all(s.cache_write_failed for s in result.steps)


class TestOutputNone:
    """Tests for steps that produce no layer."""

    @pytest.fixture
    def graph(self) -> StageGraphSchema:
        """Stage whose first step's writes are discarded."""
        return parse_graph_data(
            {
                "stages": [
                    {
                        "name": "check",
                        "steps": [
                            {"run": "printf x > scratch", "output": "none"},
                            {"run": "test ! -e scratch && printf y > kept"},
                        ],
                    }
                ]
            }
        )

    def test_layer_not_applied(self, graph, context_dir: Path, store, executor) -> None:
        """Writes of a step without output are not visible afterwards."""
        result = build(graph, context_dir, store, executor)
        assert result.filesystem.paths() == ["kept"]

    def test_empty_entry_stored(
        self, graph, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """Steps without output are still cached."""
        build(graph, context_dir, store, executor)
        kinds = sorted(e.kind for e in store.list_entries(PLATFORM))
        assert kinds == ["empty", "layer"]

        executor.commands.clear()
        result = build(graph, context_dir, store, executor)
        assert executor.commands == []
        assert result.cache_hits == 2


class TestFailures:
    """Tests for failure reporting and cancellation."""

    def test_failure_report(self, context_dir: Path, store, executor) -> None:
        """The report names the failing stage, step and command."""
        graph = parse_graph_data(
            {
                "stages": [
                    {
                        "name": "compile",
                        "steps": [
                            {"run": "true"},
                            {"run": "echo missing header >&2; exit 4"},
                            {"run": "true"},
                        ],
                    }
                ]
            }
        )
        with pytest.raises(BuildFailedError) as exc_info:
            build(graph, context_dir, store, executor)
        failure = exc_info.value.failure
        assert failure.platform == PLATFORM
        assert failure.stage == "compile"
        assert failure.step_index == 1
        assert failure.command == "echo missing header >&2; exit 4"
        assert failure.exit_code == 4
        assert failure.code == "step_failed"
        assert "missing header" in (failure.output_tail or "")
        assert not failure.cancelled
        assert [s.status for s in failure.steps] == [
            StepStatus.EXECUTED,
            StepStatus.FAILED,
            StepStatus.CANCELLED,
        ]
        assert "compile[1]" in failure.describe()

    def test_completed_steps_are_kept(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """Steps finished before a failure stay cached."""
        graph = parse_graph_data(
            {"stages": [{"name": "a", "steps": [{"run": "true"}, {"run": "exit 1"}]}]}
        )
        with pytest.raises(BuildFailedError):
            build(graph, context_dir, store, executor)
        executor.commands.clear()
        with pytest.raises(BuildFailedError):
            build(graph, context_dir, store, executor)
        assert executor.commands == ["exit 1"]

    def test_independent_steps_cancelled(
        self, context_dir: Path, store, executor: CountingExecutor
    ) -> None:
        """A failure stops steps that have not started yet."""
        graph = parse_graph_data(
            {
                "stages": [
                    {"name": "broken", "steps": [{"run": "exit 1"}]},
                    {"name": "docs", "steps": [{"run": "true"}, {"run": "true"}]},
                    {
                        "name": "final",
                        "steps": [
                            {
                                "run": "true",
                                "sources": [
                                    {"from_stage": "broken"},
                                    {"from_stage": "docs"},
                                ],
                            }
                        ],
                    },
                ]
            }
        )
        with pytest.raises(BuildFailedError) as exc_info:
            build(graph, context_dir, store, executor, max_concurrent_steps=1)
        failure = exc_info.value.failure
        assert failure.stage == "broken"
        assert executor.commands == ["exit 1"]
        assert [s.status for s in failure.steps] == [
            StepStatus.FAILED,
            StepStatus.CANCELLED,
            StepStatus.CANCELLED,
            StepStatus.CANCELLED,
        ]

    def test_dependent_stage_cancelled(self, context_dir: Path, store, executor) -> None:
        """Stages based on a failed stage never run."""
        graph = parse_graph_data(
            {
                "stages": [
                    {"name": "base", "steps": [{"run": "exit 2"}]},
                    {"name": "app", "base": "base", "steps": [{"run": "true"}]},
                ]
            }
        )
        with pytest.raises(BuildFailedError) as exc_info:
            build(graph, context_dir, store, executor)
        assert exc_info.value.failure.steps[1].status == StepStatus.CANCELLED

    def test_copy_source_missing(self, context_dir: Path, store, executor) -> None:
        """Copying a path a stage never produced fails the copying step."""
        graph = parse_graph_data(
            {
                "stages": [
                    {"name": "a", "steps": [{"run": "true"}]},
                    {
                        "name": "b",
                        "steps": [
                            {
                                "run": "true",
                                "sources": [{"from_stage": "a", "path": "/missing"}],
                            }
                        ],
                    },
                ]
            }
        )
        with pytest.raises(BuildFailedError) as exc_info:
            build(graph, context_dir, store, executor)
        failure = exc_info.value.failure
        assert failure.code == "copy_source_missing"
        assert failure.stage == "b"

    def test_unexpected_executor_error(self, context_dir: Path, store) -> None:
        """Any executor exception becomes a failure naming the step."""

        class BrokenExecutor(ShellExecutor):
            def run(self, step, base, mounts, copies=(), platform="", identity=""):
                raise RuntimeError("scratch filesystem vanished")

        with pytest.raises(BuildFailedError) as exc_info:
            build(app_graph(), context_dir, store, BrokenExecutor())
        failure = exc_info.value.failure
        assert failure.platform == PLATFORM
        assert failure.code == "execution_error"
        assert failure.stage == "build"
        assert failure.step_index == 0
        assert failure.identity.startswith("sha256:")
        assert failure.command == INSTALL
        assert "scratch filesystem vanished" in failure.message

    def test_cancel_before_start(self, context_dir: Path, store, executor) -> None:
        """A cancelled planner reports cancellation and runs nothing."""
        context = BuildContext(context_dir)
        plan = plan_build(app_graph(), context)
        planner = Planner(plan, context, store.namespace(PLATFORM), executor)
        planner.cancel("sibling platform failed")
        with pytest.raises(BuildFailedError) as exc_info:
            asyncio.run(planner.run())
        failure = exc_info.value.failure
        assert failure.cancelled
        assert failure.code == "cancelled"
        assert "sibling platform failed" in failure.message
        assert executor.commands == []


def timed_graph(log: Path, shared_mount: bool) -> StageGraphSchema:
    """Two independent stages logging start and end, joined by a final stage."""
    mounts = [{"cache": "shared", "target": "/cache"}] if shared_mount else []

    def stage(name: str) -> dict:
        return {
            "name": name,
            "steps": [
                {
                    "run": (
                        f'echo start-{name} >> "$LOG"; sleep 0.5; '
                        f'echo end-{name} >> "$LOG"'
                    ),
                    "env": {"LOG": str(log)},
                    "mounts": mounts,
                }
            ],
        }

    return parse_graph_data(
        {
            "stages": [
                stage("a"),
                stage("b"),
                {
                    "name": "final",
                    "steps": [
                        {
                            "run": "true",
                            "sources": [{"from_stage": "a"}, {"from_stage": "b"}],
                        }
                    ],
                },
            ]
        }
    )


class TestConcurrency:
    """Tests for concurrent stage execution."""

    def test_independent_stages_overlap(
        self, context_dir: Path, tmp_path: Path, store, executor
    ) -> None:
        """Stages with no dependency between them run at the same time."""
        log = tmp_path / "order.log"
        build(timed_graph(log, shared_mount=False), context_dir, store, executor)
        lines = log.read_text().split()
        assert sorted(lines[:2]) == ["start-a", "start-b"]
        assert sorted(lines[2:]) == ["end-a", "end-b"]

    def test_shared_mount_serializes_stages(
        self, context_dir: Path, tmp_path: Path, store, executor
    ) -> None:
        """Stages declaring the same mount cache never run together."""
        log = tmp_path / "order.log"
        build(timed_graph(log, shared_mount=True), context_dir, store, executor)
        lines = log.read_text().split()
        first = lines[0].removeprefix("start-")
        second = "b" if first == "a" else "a"
        assert lines == [
            f"start-{first}",
            f"end-{first}",
            f"start-{second}",
            f"end-{second}",
        ]


class TestBuildResult:
    """Tests for BuildResult."""

    def test_to_dict(self) -> None:
        """Results serialize their summary."""
        result = BuildResult(
            platform=PLATFORM,
            target="app",
            filesystem=Filesystem(),
            digest=Filesystem().digest(),
        )
        data = result.to_dict()
        assert data["success"] is True
        assert data["platform"] == PLATFORM
        assert data["cache_hits"] == 0
        assert data["steps"] == []

    def test_to_tar_is_reproducible(self, context_dir: Path, store, executor) -> None:
        """Result archives are byte identical across warm builds."""
        first = build(app_graph(), context_dir, store, executor)
        second = build(app_graph(), context_dir, store, executor)
        assert first.to_tar() == second.to_tar()
