# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path

import click

from stratum.checkpoints.store import CheckpointStore
from stratum.config import ConfigDoc, load_config, parse_overrides
from stratum.context import ExecContext
from stratum.errors import CheckpointConfigError, CheckpointError, ConfigError, PlanError
from stratum.executor import Executor
from stratum.modules import collect_tasks
from stratum.planner import Plan, build_plan
from stratum.ui.console import Console, get_console, set_console

CONFIG_ARG = click.argument(
    "config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
SET_OPTION = click.option(
    "--set",
    "overrides",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a config value (value parsed as TOML, else kept as a string)",
)


def _fail(ctx: click.Context, title: str, exc: BaseException, suggestion: str | None = None) -> None:
    console = get_console()
    console.print_error(title, str(exc), suggestion=suggestion)
    if ctx.obj.get("debug", False):
        console.print_exception(exc)
    sys.exit(1)


def _load(config: Path, overrides: tuple[str, ...]) -> ConfigDoc:
    doc = load_config(config)
    if overrides:
        doc = doc.with_overrides(parse_overrides(overrides))
    return doc


def _plan(doc: ConfigDoc):
    tasks, registry = collect_tasks(doc)
    return build_plan(tasks), registry


def _handle_errors(ctx: click.Context, exc: Exception) -> None:
    if isinstance(exc, PlanError):
        _fail(ctx, "Invalid task graph", exc, suggestion="Check the `after` entries of the tasks named above.")
    elif isinstance(exc, CheckpointConfigError):
        _fail(ctx, "Invalid checkpoint configuration", exc)
    elif isinstance(exc, ConfigError):
        _fail(ctx, "Invalid configuration", exc)
    elif isinstance(exc, CheckpointError):
        _fail(ctx, "Checkpoint store error", exc)
    get_console().print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet-logs", is_flag=True, default=False, help="Do not echo task output lines")
@click.pass_context
def cli(ctx, debug, quiet_logs):
    """stratum: declarative task orchestrator with checkpoint restore."""
    console = Console(debug=debug, quiet_logs=quiet_logs)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# ----------------------------------------------------------------------
# plan / run
# ----------------------------------------------------------------------

@cli.command()
@CONFIG_ARG
@SET_OPTION
@click.option("--dot", is_flag=True, default=False, help="Print the graph in Graphviz dot format")
@click.pass_context
def plan(ctx, config, overrides, dot):
    """Print the execution order of a config's tasks."""
    console = get_console()
    try:
        doc = _load(config, overrides)
        p, _ = _plan(doc)
    except Exception as e:
        _handle_errors(ctx, e)
        return

    if dot:
        click.echo(p.to_dot())
    else:
        console.print_plan(p)


def _install_interrupt(exec_ctx: ExecContext):
    """First Ctrl-C cancels (SIGTERM to task process groups), the second kills."""
    console = get_console()
    hits = {"n": 0}

    def handler(signum, frame):
        hits["n"] += 1
        if hits["n"] == 1:
            console.print_warning("Interrupted: cancelling running tasks (Ctrl-C again to kill)")
            exec_ctx.cancel()
        else:
            console.print_warning("Killing running tasks")
            exec_ctx.kill()

    return signal.signal(signal.SIGINT, handler)


@cli.command()
@CONFIG_ARG
@SET_OPTION
@click.option("--dry-run", is_flag=True, default=False, help="Show what would run without running it")
@click.option("--max-parallel", default=0, type=int, show_default=True, help="Parallel task limit (0 = all CPUs)")
@click.option("--sequential", is_flag=True, default=False, help="Run one task at a time in plan order")
@click.pass_context
def run(ctx, config, overrides, dry_run, max_parallel, sequential):
    """Run every task of a config, restoring checkpoints where possible."""
    console = get_console()
    try:
        doc = _load(config, overrides)
        p, registry = _plan(doc)
        store = CheckpointStore.from_doc(doc)
        exec_ctx = ExecContext(doc, dry_run=dry_run, console=console)
        executor = Executor(p, exec_ctx, registry, store)
        executor.prepare()
    except Exception as e:
        _handle_errors(ctx, e)
        return

    if dry_run or sequential:
        mode = "sequential"
    else:
        mode = f"parallel (max {max_parallel or 'cpu'})"
    console.print_run_started(config.name, len(p), mode + (", dry-run" if dry_run else ""))

    previous = _install_interrupt(exec_ctx)
    try:
        report = executor.run(max_parallel=max_parallel, sequential=sequential)
    finally:
        signal.signal(signal.SIGINT, previous)

    console.print_results(report)
    console.print_failure_logs(report)

    if report.cancelled:
        sys.exit(130)
    if not report.ok:
        sys.exit(1)


# ----------------------------------------------------------------------
# checkpoints
# ----------------------------------------------------------------------

@cli.group()
def checkpoints():
    """Inspect and maintain the checkpoint store."""


def _store(doc: ConfigDoc, p: Plan | None = None) -> CheckpointStore:
    store = CheckpointStore.from_doc(doc)
    if p is not None:
        store.validate_against_plan(p)
    return store


@checkpoints.command("status")
@CONFIG_ARG
@SET_OPTION
@click.pass_context
def checkpoints_status(ctx, config, overrides):
    """Show restore/rebuild decisions without running anything."""
    console = get_console()
    try:
        doc = _load(config, overrides)
        p, _ = _plan(doc)
        store = _store(doc, p)
        if not store.enabled:
            console.print_info("checkpoints are disabled ([checkpoints] enabled = false)")
        console.print_checkpoint_status(store.status())
    except Exception as e:
        _handle_errors(ctx, e)


@checkpoints.command("retry")
@CONFIG_ARG
@click.option("--max", "max_count", default=None, type=click.IntRange(min=0), help="Retry at most N queued uploads")
@click.option("--all", "include_permanent", is_flag=True, default=False, help="Also retry permanently failed uploads")
@click.pass_context
def checkpoints_retry(ctx, config, max_count, include_permanent):
    """Retry queued checkpoint uploads."""
    console = get_console()
    try:
        store = _store(_load(config, ()))
        report = store.retry_uploads(max_count, include_permanent=include_permanent)
    except Exception as e:
        _handle_errors(ctx, e)
        return

    console.print_retry_report(report)
    if report.failed:
        sys.exit(1)


@checkpoints.command("list")
@CONFIG_ARG
@SET_OPTION
@click.option("--point", "point_id", default=None, help="Only list this checkpoint id")
@click.option("--remote", is_flag=True, default=False, help="Also query each backend's listing")
@click.pass_context
def checkpoints_list(ctx, config, overrides, point_id, remote):
    """List known checkpoint fingerprints."""
    console = get_console()
    try:
        store = _store(_load(config, overrides))
        console.print_checkpoint_list(store.list(point_id, include_remote=remote))
    except Exception as e:
        _handle_errors(ctx, e)


@checkpoints.command("clear")
@CONFIG_ARG
@click.option("--all", "all_entries", is_flag=True, default=False, help="Remove every queue entry, not just done ones")
@click.pass_context
def checkpoints_clear(ctx, config, all_entries):
    """Remove finished (or all) entries from the upload queue."""
    console = get_console()
    try:
        removed = _store(_load(config, ())).clear_uploads(all_entries=all_entries)
    except Exception as e:
        _handle_errors(ctx, e)
        return
    console.print_info(f"Removed {removed} upload queue entr{'y' if removed == 1 else 'ies'}")


@checkpoints.command("serve")
@click.option(
    "--root",
    required=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory that holds served checkpoints",
)
@click.option("--token", default=None, envvar="STRATUM_CHECKPOINT_TOKEN", help="Require this bearer token")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def checkpoints_serve(root, token, host, port):
    """Serve a directory as an HTTP checkpoint backend."""
    import uvicorn

    from stratum.checkpoints.server import create_app

    root.mkdir(parents=True, exist_ok=True)
    get_console().print_info(f"Serving checkpoints from {root.resolve()} on http://{host}:{port}")
    uvicorn.run(create_app(root, token), host=host, port=port)


if __name__ == "__main__":
    cli()
