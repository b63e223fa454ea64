"""Tests for the CLI.

Each test points the database and cache directory at tmp_path through
STAGECACHE_ environment variables.
"""

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from stagecache import __version__
from stagecache.cli import app

runner = CliRunner()

GRAPH = {
    "stages": [
        {
            "name": "build",
            "steps": [
                {
                    "run": "mkdir -p out && cp src/manifest out/manifest",
                    "sources": [{"file": "manifest", "dest": "/src/manifest"}],
                }
            ],
        },
        {
            "name": "runtime",
            "steps": [
                {
                    "run": "test -f app/manifest",
                    "sources": [{"from_stage": "build", "path": "/out", "dest": "/app"}],
                }
            ],
        },
    ]
}


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the database, cache and scratch roots inside tmp_path."""
    monkeypatch.setenv("STAGECACHE_DB_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("STAGECACHE_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("STAGECACHE_TMP_DIR", str(tmp_path / "scratch"))


@pytest.fixture
def graph_file(tmp_path: Path) -> Path:
    """Write the sample graph to a YAML file."""
    path = tmp_path / "graph.yaml"
    path.write_text(yaml.safe_dump(GRAPH))
    return path


def invoke_json(args: list[str]):
    """Invoke a command with --json and logging silenced, returning parsed output."""
    result = runner.invoke(app, ["--log-level", "CRITICAL", *args, "--json"])
    return result, json.loads(result.stdout) if result.stdout.strip() else None


def build_args(graph_file: Path, context_dir: Path, *platforms: str) -> list[str]:
    """Arguments for a build run."""
    args = ["build", "run", str(graph_file), "--context", str(context_dir)]
    for platform in platforms:
        args += ["--platform", platform]
    return args


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "stagecache" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Concurrency:" in result.stdout
        assert "Step timeout" in result.stdout

    def test_config_json(self, tmp_path: Path) -> None:
        """CLI config --json should output the effective settings."""
        result, data = invoke_json(["config"])
        assert result.exit_code == 0
        assert data["cache_dir"] == str(tmp_path / "cache")
        assert data["max_concurrent_steps"] >= 1


class TestGraphCommands:
    """Test graph validate and plan."""

    def test_validate(self, graph_file: Path) -> None:
        """Valid graphs are summarized."""
        result = runner.invoke(app, ["graph", "validate", str(graph_file)])
        assert result.exit_code == 0
        assert "Valid graph: 2 stage(s)" in result.stdout

    def test_validate_missing_file(self, tmp_path: Path) -> None:
        """Missing files fail."""
        result = runner.invoke(app, ["graph", "validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_validate_bad_reference(self, tmp_path: Path) -> None:
        """Reference errors are reported with their code."""
        path = tmp_path / "bad.yaml"
        path.write_text("stages:\n  - name: a\n    base: missing\n")
        result = runner.invoke(app, ["graph", "validate", str(path)])
        assert result.exit_code == 1
        assert "unknown_stage" in result.stdout

    def test_plan_json(self, graph_file: Path, context_dir: Path) -> None:
        """Plans list every step identity."""
        result, data = invoke_json(
            ["graph", "plan", str(graph_file), "--context", str(context_dir)]
        )
        assert result.exit_code == 0
        assert data["target"] == "runtime"
        assert [s["name"] for s in data["stages"]] == ["build", "runtime"]
        assert data["stages"][0]["steps"][0]["identity"].startswith("sha256:")

    def test_plan_target(self, graph_file: Path, context_dir: Path) -> None:
        """--target limits the plan."""
        result, data = invoke_json(
            [
                "graph",
                "plan",
                str(graph_file),
                "--context",
                str(context_dir),
                "--target",
                "build",
            ]
        )
        assert result.exit_code == 0
        assert [s["name"] for s in data["stages"]] == ["build"]

    def test_plan_missing_source(self, graph_file: Path, context_dir: Path) -> None:
        """Planning fails when a copied file is missing."""
        (context_dir / "manifest").unlink()
        result = runner.invoke(
            app, ["graph", "plan", str(graph_file), "--context", str(context_dir)]
        )
        assert result.exit_code == 1
        assert "source_not_found" in result.stdout


class TestBuildCommands:
    """Test build run, list and show."""

    def test_run_json(self, graph_file: Path, context_dir: Path) -> None:
        """Builds report per-platform results and record IDs."""
        result, data = invoke_json(
            build_args(graph_file, context_dir, "linux/amd64", "linux/arm64")
        )
        assert result.exit_code == 0
        assert data["success"] is True
        assert set(data["platforms"]) == {"linux/amd64", "linux/arm64"}
        assert data["platforms"]["linux/amd64"]["executed_steps"] == 2
        assert set(data["build_ids"]) == {"linux/amd64", "linux/arm64"}

    def test_second_run_is_cached(self, graph_file: Path, context_dir: Path) -> None:
        """A repeated build is served from the persistent cache."""
        args = build_args(graph_file, context_dir, "linux/amd64")
        _, first = invoke_json(args)
        _, second = invoke_json(args)
        amd64 = second["platforms"]["linux/amd64"]
        assert amd64["cache_hits"] == 2
        assert amd64["executed_steps"] == 0
        assert amd64["digest"] == first["platforms"]["linux/amd64"]["digest"]

    def test_run_exports(
        self, graph_file: Path, context_dir: Path, tmp_path: Path
    ) -> None:
        """--output writes one archive per platform."""
        out = tmp_path / "out"
        result, data = invoke_json(
            [*build_args(graph_file, context_dir, "linux/amd64"), "--output", str(out)]
        )
        assert result.exit_code == 0
        assert (out / "linux%2Famd64.tar").exists()
        assert data["exports"]["linux/amd64"] == str(out / "linux%2Famd64.tar")

    def test_run_export_dir(
        self, graph_file: Path, context_dir: Path, tmp_path: Path
    ) -> None:
        """--format dir writes a directory tree."""
        out = tmp_path / "out"
        result = runner.invoke(
            app,
            [
                *build_args(graph_file, context_dir, "linux/amd64"),
                "--output",
                str(out),
                "--format",
                "dir",
            ],
        )
        assert result.exit_code == 0
        assert (out / "linux%2Famd64" / "app" / "manifest").exists()

    def test_run_failure_exits_nonzero(
        self, tmp_path: Path, context_dir: Path
    ) -> None:
        """Failed platforms make the command fail and are reported."""
        path = tmp_path / "fail.yaml"
        path.write_text(
            yaml.safe_dump({"stages": [{"name": "a", "steps": [{"run": "exit 5"}]}]})
        )
        result, data = invoke_json(build_args(path, context_dir, "linux/amd64"))
        assert result.exit_code == 1
        failure = data["platforms"]["linux/amd64"]
        assert failure["success"] is False
        assert failure["stage"] == "a"
        assert failure["step_index"] == 0
        assert failure["exit_code"] == 5

    def test_run_requires_platform(self, graph_file: Path, context_dir: Path) -> None:
        """At least one --platform is required."""
        result = runner.invoke(
            app, ["build", "run", str(graph_file), "--context", str(context_dir)]
        )
        assert result.exit_code != 0

    def test_run_invalid_mode(self, graph_file: Path, context_dir: Path) -> None:
        """Unknown batch modes are rejected."""
        result = runner.invoke(
            app,
            [*build_args(graph_file, context_dir, "linux/amd64"), "--mode", "yolo"],
        )
        assert result.exit_code == 1
        assert "Invalid mode" in result.stdout

    def test_list_empty(self) -> None:
        """No builds gives an empty JSON list."""
        result, data = invoke_json(["build", "list"])
        assert result.exit_code == 0
        assert data == []

    def test_list_and_show(self, graph_file: Path, context_dir: Path) -> None:
        """Recorded builds can be listed and shown with steps."""
        _, run = invoke_json(build_args(graph_file, context_dir, "linux/amd64"))
        build_id = run["build_ids"]["linux/amd64"]

        result, builds = invoke_json(["build", "list", "--platform", "linux/amd64"])
        assert result.exit_code == 0
        assert [b["id"] for b in builds] == [build_id]
        assert builds[0]["status"] == "succeeded"

        result, shown = invoke_json(["build", "show", str(build_id)])
        assert result.exit_code == 0
        assert [s["stage"] for s in shown["steps"]] == ["build", "runtime"]

    def test_show_not_found(self) -> None:
        """Unknown build IDs fail."""
        result = runner.invoke(app, ["build", "show", "999"])
        assert result.exit_code == 1
        assert "Build not found" in result.stdout

    def test_list_invalid_status(self) -> None:
        """Unknown statuses are rejected."""
        result = runner.invoke(app, ["build", "list", "--status", "bogus"])
        assert result.exit_code == 1


class TestCacheCommands:
    """Test cache list and prune."""

    def test_list_empty(self) -> None:
        """An unused cache is empty."""
        result, data = invoke_json(["cache", "list"])
        assert result.exit_code == 0
        assert data == {"entries": [], "mount_caches": []}

    def test_list_after_build(self, graph_file: Path, context_dir: Path) -> None:
        """Built steps appear as entries in their platform."""
        invoke_json(build_args(graph_file, context_dir, "linux/amd64"))
        result, data = invoke_json(["cache", "list", "--platform", "linux/amd64"])
        assert result.exit_code == 0
        assert len(data["entries"]) == 2
        assert {e["platform"] for e in data["entries"]} == {"linux/amd64"}

    def test_prune_requires_limit(self) -> None:
        """Prune needs at least one limit."""
        result = runner.invoke(app, ["cache", "prune"])
        assert result.exit_code == 1

    def test_prune_dry_run_then_prune(
        self, graph_file: Path, context_dir: Path
    ) -> None:
        """Dry runs keep entries; real prunes remove them."""
        invoke_json(build_args(graph_file, context_dir, "linux/amd64"))

        result, preview = invoke_json(["cache", "prune", "--max-entries", "0", "--dry-run"])
        assert result.exit_code == 0
        assert preview["dry_run"] is True
        assert len(preview["entries"]) == 2
        _, listing = invoke_json(["cache", "list"])
        assert len(listing["entries"]) == 2

        result, pruned = invoke_json(["cache", "prune", "--max-entries", "0"])
        assert result.exit_code == 0
        assert len(pruned["entries"]) == 2
        _, listing = invoke_json(["cache", "list"])
        assert listing["entries"] == []
