"""Thin CLI wrapper for stagecache.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from stagecache import __version__
from stagecache.config import get_settings, print_settings_json

app = typer.Typer(
    name="stagecache",
    help="stagecache - cache-accelerated multi-stage, multi-platform builds",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"stagecache version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _print_json(data: Any) -> None:
    """Print JSON without Rich markup or line wrapping."""
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """stagecache - cache-accelerated multi-stage, multi-platform builds."""
    configure_logging((log_level or get_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), markup=False, soft_wrap=True)
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Shell:               {settings.shell}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max platforms:       {settings.max_concurrent_platforms}")
        console.print(f"  Max steps:           {settings.max_concurrent_steps}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Step timeout:        {settings.step_timeout}")


def _load_graph_or_exit(path: str) -> Any:
    """Load a graph file, printing errors and exiting on failure."""
    from pydantic import ValidationError

    from stagecache.graph.io import load_graph
    from stagecache.graph.schema import GraphValidationError

    file_path = Path(path)
    if not file_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        return load_graph(file_path)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except GraphValidationError as e:
        console.print(f"[red]Invalid graph ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Validation failed: {e}[/red]")
        raise typer.Exit(code=1) from None


def _open_context_or_exit(context_dir: str) -> Any:
    """Open a build context, printing errors and exiting on failure."""
    from stagecache.graph.context import BuildContext, BuildContextError

    try:
        return BuildContext(Path(context_dir))
    except BuildContextError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


graph_app = typer.Typer(help="Inspect stage graphs")
app.add_typer(graph_app, name="graph")


@graph_app.command("validate")
def graph_validate(
    path: Annotated[str, typer.Argument(help="Path to graph file to validate")],
) -> None:
    """Validate a stage graph file without building it."""
    graph = _load_graph_or_exit(path)
    console.print(f"[green]✓ Valid graph: {len(graph.stages)} stage(s)[/green]")
    for stage in graph.stages:
        base = f" (base: {stage.base})" if stage.base else ""
        console.print(f"  {stage.name}{base}: {len(stage.steps)} step(s)")


@graph_app.command("plan")
def graph_plan(
    path: Annotated[str, typer.Argument(help="Path to graph file")],
    context_dir: Annotated[
        str,
        typer.Option("--context", "-c", help="Build context directory"),
    ] = ".",
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Target stage (default: last stage)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compute every step identity without executing anything."""
    from stagecache.builds.planner import plan_build
    from stagecache.graph.context import BuildContextError
    from stagecache.graph.schema import GraphValidationError

    graph = _load_graph_or_exit(path)
    context = _open_context_or_exit(context_dir)

    try:
        plan = plan_build(graph, context, target)
    except (GraphValidationError, BuildContextError) as e:
        console.print(f"[red]Planning failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(plan.to_dict())
        return

    console.print(f"[bold]Plan for target {plan.target}:[/bold]")
    console.print(f"  Graph: {plan.graph_digest}")
    console.print()
    for stage in plan.stages:
        base = f" (base: {stage.base})" if stage.base else ""
        console.print(f"  [green]{stage.name}[/green]{base}")
        for step in stage.steps:
            console.print(f"    [{step.index}] {step.identity}")
            console.print(f"        {step.step.command_text()}", markup=False)
        console.print()


builds_app = typer.Typer(help="Run builds and inspect build history")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    path: Annotated[str, typer.Argument(help="Path to graph file")],
    platforms: Annotated[
        list[str],
        typer.Option("--platform", "-p", help="Target platform (can be repeated)"),
    ],
    context_dir: Annotated[
        str,
        typer.Option("--context", "-c", help="Build context directory"),
    ] = ".",
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Target stage (default: last stage)"),
    ] = None,
    output_dir: Annotated[
        str | None,
        typer.Option("--output", "-o", help="Export results to this directory"),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", help="Export format: tar (default) or dir"),
    ] = "tar",
    mode: Annotated[
        str,
        typer.Option(
            "--mode", "-m", help="Batch mode: fail-fast (default) or best-effort"
        ),
    ] = "fail-fast",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a stage graph for one or more platforms.

    Steps whose identity is already cached for a platform are reused;
    the rest run and are stored. Use --mode=fail-fast to stop other
    platforms after a failure, or --mode=best-effort to let them finish.
    """
    from stagecache.builds.service import (
        BuildServiceError,
        export_result,
        open_store,
        run_builds,
    )
    from stagecache.db import open_database
    from stagecache.graph.context import BuildContextError
    from stagecache.graph.schema import GraphValidationError
    from stagecache.types import BatchMode

    try:
        batch_mode = BatchMode(mode)
    except ValueError:
        console.print(f"[red]Invalid mode: {mode}[/red]")
        console.print("Valid values: fail-fast, best-effort")
        raise typer.Exit(code=1) from None

    if output_format not in ("tar", "dir"):
        console.print(f"[red]Invalid format: {output_format}[/red]")
        console.print("Valid values: tar, dir")
        raise typer.Exit(code=1)

    graph = _load_graph_or_exit(path)
    context = _open_context_or_exit(context_dir)

    settings = get_settings()
    factory = open_database()
    store = open_store(settings, factory)

    with factory() as session:
        try:
            batch, records = run_builds(
                session,
                graph,
                context,
                platforms,
                store,
                target=target,
                mode=batch_mode,
                settings=settings,
            )
        except (GraphValidationError, BuildContextError, BuildServiceError) as e:
            console.print(f"[red]Build not started ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None

        exports: dict[str, str] = {}
        if output_dir:
            for platform, result in batch.succeeded.items():
                exported = export_result(result, Path(output_dir), output_format)  # type: ignore[arg-type]
                exports[platform] = str(exported)

        if json_output:
            output = batch.to_dict()
            output["build_ids"] = {r.platform: r.id for r in records}
            output["exports"] = exports
            _print_json(output)
        else:
            console.print(f"[bold]Build Results ({batch.target}):[/bold]")
            for platform in batch.results:
                if platform in batch.succeeded:
                    result = batch.succeeded[platform]
                    console.print(
                        f"  [green]✓ {platform}[/green] {result.digest} "
                        f"({result.cache_hits} cached, "
                        f"{result.executed_steps} executed)"
                    )
                    if platform in exports:
                        console.print(f"      Exported: {exports[platform]}")
                else:
                    failure = batch.failed[platform]
                    color = "yellow" if failure.cancelled else "red"
                    console.print(f"  [{color}]✗ {platform}[/{color}]")
                    console.print(f"      {failure.describe()}", markup=False)
                    if failure.output_tail:
                        console.print(failure.output_tail, markup=False)

    if not batch.all_succeeded():
        raise typer.Exit(code=1)


@builds_app.command("list")
def builds_list(
    platform: Annotated[
        str | None,
        typer.Option("--platform", "-p", help="Filter by platform"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/cancelled)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from stagecache.builds.service import build_record_to_dict, list_builds
    from stagecache.db import open_database
    from stagecache.types import BuildStatus

    factory = open_database()

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed, cancelled")
            raise typer.Exit(code=1) from None

    with factory() as session:
        builds = list_builds(
            session,
            platform=platform,
            status=status_filter,
            limit=limit,
        )

        if not builds:
            if json_output:
                console.print("[]", markup=False)
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            _print_json([build_record_to_dict(b) for b in builds])
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "cancelled": "yellow",
                    "running": "blue",
                    "pending": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
                console.print(f"    Platform: {b.platform}")
                console.print(f"    Target: {b.target_stage}")
                console.print(f"    Status: {b.status}")
                console.print(
                    f"    Steps: {b.cache_hits} cached, {b.executed_steps} executed"
                )
                if b.result_digest:
                    console.print(f"    Result: {b.result_digest}")
                if b.error_message:
                    console.print(f"    Error: {b.error_message}", markup=False)
                console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build record with its steps."""
    from stagecache.builds.service import (
        BuildNotFoundError,
        build_record_to_dict,
        get_build,
    )
    from stagecache.db import open_database

    factory = open_database()

    with factory() as session:
        try:
            build = get_build(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            _print_json(build_record_to_dict(build, include_steps=True))
            return

        console.print(f"[bold]Build #{build.id}[/bold] ({build.platform})")
        console.print(f"  Target: {build.target_stage}")
        console.print(f"  Status: {build.status}")
        console.print(f"  Graph: {build.graph_digest}")
        if build.result_digest:
            console.print(f"  Result: {build.result_digest}")
        if build.error_message:
            console.print(f"  Error: {build.error_message}", markup=False)
        console.print()
        for s in build.steps:
            console.print(f"  {s.stage}[{s.step_index}] {s.status}", markup=False)


cache_app = typer.Typer(help="Inspect and prune the build cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    platform: Annotated[
        str | None,
        typer.Option("--platform", "-p", help="Filter by platform"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached layer entries and mount caches."""
    from stagecache.builds.service import open_store
    from stagecache.db import open_database

    store = open_store(get_settings(), open_database())

    entries = store.list_entries(platform)
    mounts = store.list_mount_caches(platform)

    if json_output:
        _print_json(
            {
                "entries": [
                    {
                        "platform": e.platform,
                        "identity": e.identity,
                        "kind": e.kind,
                        "size_bytes": e.size_bytes,
                        "last_used_at": e.last_used_at.isoformat(),
                    }
                    for e in entries
                ],
                "mount_caches": [
                    {
                        "platform": m.platform,
                        "name": m.name,
                        "size_bytes": m.size_bytes,
                        "last_used_at": m.last_used_at.isoformat(),
                    }
                    for m in mounts
                ],
            }
        )
        return

    if not entries and not mounts:
        console.print("[yellow]Cache is empty[/yellow]")
        return

    console.print(f"[bold]Layer entries ({len(entries)}):[/bold]")
    for e in entries:
        console.print(
            f"  {e.platform}  {e.identity[:23]}  {e.kind}  {e.size_bytes} bytes  "
            f"last used {e.last_used_at:%Y-%m-%d %H:%M}"
        )
    console.print()
    console.print(f"[bold]Mount caches ({len(mounts)}):[/bold]")
    for m in mounts:
        console.print(
            f"  {m.platform}  {m.name}  {m.size_bytes} bytes  "
            f"last used {m.last_used_at:%Y-%m-%d %H:%M}"
        )


@cache_app.command("prune")
def cache_prune(
    max_entries: Annotated[
        int | None,
        typer.Option("--max-entries", help="Keep at most N entries per platform"),
    ] = None,
    max_age_days: Annotated[
        float | None,
        typer.Option("--max-age-days", help="Evict content unused for D days"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Evict least recently used cache content."""
    from datetime import timedelta

    from stagecache.builds.eviction import LeastRecentlyUsedPolicy, prune_cache
    from stagecache.builds.service import open_store
    from stagecache.db import open_database

    if max_entries is None and max_age_days is None:
        console.print("[red]Error: --max-entries or --max-age-days is required[/red]")
        raise typer.Exit(code=1)

    try:
        policy = LeastRecentlyUsedPolicy(
            max_entries=max_entries,
            max_age=timedelta(days=max_age_days) if max_age_days is not None else None,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    store = open_store(get_settings(), open_database())
    result = prune_cache(store, policy, dry_run=dry_run)

    if json_output:
        _print_json(result.to_dict())
        return

    if not result.entries and not result.mount_caches:
        console.print("[yellow]Nothing to prune[/yellow]")
        return

    prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
    console.print(
        f"[bold]{prefix} {len(result.entries)} entr(ies) and "
        f"{len(result.mount_caches)} mount cache(s), "
        f"{result.freed_bytes} bytes:[/bold]"
    )
    for e in result.entries:
        console.print(f"  - {e.platform} {e.identity[:23]}")
    for m in result.mount_caches:
        console.print(f"  - {m.platform} mount {m.name}")


if __name__ == "__main__":
    app()
