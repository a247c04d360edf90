"""Main CLI entrypoint for portalsync."""

import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from portalsync import __version__
from portalsync.core.config import PortalSyncConfig
from portalsync.core.exceptions import ChainAbortedError, PortalSyncError
from portalsync.service import SchedulerService
from portalsync.tasks.models import TaskDefinition

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

app = typer.Typer(
    name="portalsync",
    help="Scheduled LMS and CRM sync engine",
    no_args_is_help=True,
)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Helpers
# =============================================================================

def _configure_logging(log_level: str) -> None:
    level = log_level.upper()
    if level not in VALID_LOG_LEVELS:
        err_console.print(f"[red]Error: Invalid log level '{log_level}'[/red]")
        err_console.print(f"Valid levels: {', '.join(VALID_LOG_LEVELS)}")
        raise typer.Exit(1)
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_config(ctx: typer.Context) -> PortalSyncConfig:
    config_path: Optional[Path] = (ctx.obj or {}).get("config_path")
    try:
        return PortalSyncConfig.from_env(config_path)
    except PortalSyncError as e:
        err_console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)


def _with_service(ctx: typer.Context, action: Callable[[SchedulerService], Awaitable[T]]) -> T:
    """Open a service, run ``action`` against it, and close it."""
    config = _load_config(ctx)

    async def runner() -> T:
        async with SchedulerService(config) as service:
            return await action(service)

    try:
        return asyncio.run(runner())
    except ChainAbortedError as e:
        err_console.print(f"[red]{e.message}[/red]")
        if e.run is not None:
            _print_chain(e.run.to_dict())
        raise typer.Exit(1)
    except PortalSyncError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _fmt_time(value: Any) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S") if hasattr(value, "strftime") else str(value)


def _status_style(status: str) -> str:
    return {
        "success": "green",
        "completed": "green",
        "running": "cyan",
        "failed": "red",
        "cancelled": "yellow",
        "skipped": "yellow",
    }.get(status, "white")


def _print_chain(summary: dict[str, Any]) -> None:
    table = Table(title=f"Chain {summary['name']} ({summary['status']})")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Required")
    table.add_column("Duration", justify="right")
    table.add_column("Error")
    for step in summary["steps"]:
        style = _status_style(step["status"])
        table.add_row(
            step["name"],
            f"[{style}]{step['status']}[/{style}]",
            "yes" if step["required"] else "no",
            f"{step['duration_seconds']:.1f}s" if step["duration_seconds"] is not None else "-",
            step["error"] or "",
        )
    console.print(table)


def _parse_assignments(values: list[str]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for item in values:
        if "=" not in item:
            err_console.print(f"[red]Expected key=value, got '{item}'[/red]")
            raise typer.Exit(1)
        key, raw = item.split("=", 1)
        try:
            result[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            result[key.strip()] = raw
    return result


# =============================================================================
# Commands
# =============================================================================

@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[
        Optional[Path], typer.Option("--config", "-c", help="Path to portalsync.config.json")
    ] = None,
    log_level: Annotated[
        str, typer.Option("--log-level", help="Logging level")
    ] = "WARNING",
) -> None:
    """Scheduled LMS and CRM sync engine."""
    _configure_logging(log_level)
    ctx.obj = {"config_path": config}


@app.command("version")
def version_command() -> None:
    """Show the installed version."""
    console.print(f"portalsync {__version__}")


@app.command("run")
def run_command(
    ctx: typer.Context,
    force: Annotated[
        bool, typer.Option("--force", help="Run even when the enable gate is closed")
    ] = False,
) -> None:
    """Run the scheduler in the foreground until interrupted."""
    config = _load_config(ctx)
    if force and not config.scheduler.enabled:
        config = replace(config, scheduler=replace(config.scheduler, enabled=True))

    async def runner() -> None:
        async with SchedulerService(config) as service:
            if not await service.initialize_scheduler():
                console.print("[yellow]Scheduler disabled: set ENABLE_SCHEDULER=true or use --force[/yellow]")
                return
            console.print(
                f"[green]Scheduler running[/green] (checking every "
                f"{config.scheduler.check_interval_seconds}s). Press Ctrl+C to stop"
            )
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop.set)
                except NotImplementedError:
                    pass
            await stop.wait()
            console.print("\n[yellow]Shutting down, waiting for running tasks...[/yellow]")

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        raise typer.Exit(0)


@app.command("tasks")
def tasks_command(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """List scheduled tasks."""
    tasks: list[TaskDefinition] = _with_service(ctx, lambda s: s.get_all_tasks())

    if json_output:
        console.print(json.dumps([t.to_dict() for t in tasks], indent=2))
        return
    if not tasks:
        console.print("[yellow]No tasks defined. Run 'portalsync seed' to load the defaults.[/yellow]")
        return

    table = Table(title="Scheduled Tasks")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Schedule")
    table.add_column("Last Status")
    table.add_column("Last Run")
    table.add_column("Next Run")
    table.add_column("Runs", justify="right")
    table.add_column("Fails", justify="right")
    for t in tasks:
        schedule = (
            f"day {t.schedule_day} {t.schedule_time}"
            if t.has_calendar_schedule
            else f"every {t.interval_minutes}m"
        )
        style = _status_style(t.last_status.value)
        table.add_row(
            t.task_type,
            t.task_name,
            "[green]yes[/green]" if t.enabled else "[dim]no[/dim]",
            schedule,
            f"[{style}]{t.last_status.value}[/{style}]",
            _fmt_time(t.last_run_at),
            _fmt_time(t.next_run_at),
            str(t.run_count),
            str(t.fail_count),
        )
    console.print(table)


@app.command("history")
def history_command(
    ctx: typer.Context,
    task_type: Annotated[str, typer.Argument(help="Task type")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of runs")] = 20,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Show recent runs of a task."""
    runs = _with_service(ctx, lambda s: s.get_task_history(task_type, limit))

    if json_output:
        console.print(json.dumps([r.to_dict() for r in runs], indent=2))
        return

    table = Table(title=f"Run History: {task_type}")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Error")
    for r in runs:
        style = _status_style(r.status.value)
        table.add_row(
            _fmt_time(r.started_at),
            f"[{style}]{r.status.value}[/{style}]",
            f"{r.duration_seconds}s" if r.duration_seconds is not None else "-",
            str(r.records_processed) if r.records_processed is not None else "-",
            (r.error_message or "")[:80],
        )
    console.print(table)


@app.command("trigger")
def trigger_command(
    ctx: typer.Context,
    task_type: Annotated[str, typer.Argument(help="Task type")],
) -> None:
    """Run a task now and wait for it to finish."""
    console.print(f"Running {task_type}...")
    result = _with_service(ctx, lambda s: s.trigger_task(task_type, wait=True))
    console.print(f"[green]{task_type} completed[/green] ({result.get('records_processed', 0)} records)")


@app.command("enable")
def enable_command(
    ctx: typer.Context,
    task_type: Annotated[str, typer.Argument(help="Task type")],
) -> None:
    """Enable a task; it becomes due immediately."""
    task = _with_service(ctx, lambda s: s.set_task_enabled(task_type, True))
    console.print(f"[green]Enabled {task.task_type}[/green]")


@app.command("disable")
def disable_command(
    ctx: typer.Context,
    task_type: Annotated[str, typer.Argument(help="Task type")],
) -> None:
    """Disable a task."""
    task = _with_service(ctx, lambda s: s.set_task_enabled(task_type, False))
    console.print(f"[yellow]Disabled {task.task_type}[/yellow]")


@app.command("configure")
def configure_command(
    ctx: typer.Context,
    task_type: Annotated[str, typer.Argument(help="Task type")],
    set_values: Annotated[
        Optional[list[str]], typer.Option("--set", help="Config value as key=value (repeatable)")
    ] = None,
    interval: Annotated[
        Optional[int], typer.Option("--interval", help="Interval in minutes")
    ] = None,
    day: Annotated[
        Optional[int], typer.Option("--day", help="Weekly slot day (0=Sunday)")
    ] = None,
    at: Annotated[
        Optional[str], typer.Option("--at", help="Weekly slot time HH:MM:SS")
    ] = None,
) -> None:
    """Change a task's configuration or schedule."""
    updates = _parse_assignments(set_values or [])

    async def action(service: SchedulerService) -> TaskDefinition:
        task = await service.store.require_task(task_type)
        if updates:
            task = await service.update_task_config(task_type, {**task.config, **updates})
        if interval is not None or day is not None or at is not None:
            task = await service.update_task_schedule(
                task_type,
                interval if interval is not None else task.interval_minutes,
                day if day is not None else task.schedule_day,
                at if at is not None else task.schedule_time,
            )
        return task

    task = _with_service(ctx, action)
    console.print(f"[green]Updated {task.task_type}[/green]")
    console.print(json.dumps(task.to_dict(), indent=2))


@app.command("seed")
def seed_command(
    ctx: typer.Context,
    file: Annotated[
        Optional[Path], typer.Option("--file", "-f", help="YAML task catalog")
    ] = None,
    overwrite: Annotated[
        bool, typer.Option("--overwrite", help="Update existing task definitions")
    ] = False,
) -> None:
    """Load the default task catalog."""
    count = _with_service(ctx, lambda s: s.seed_default_tasks(file, overwrite=overwrite))
    console.print(f"[green]Seeded {count} task definition(s)[/green]")


@app.command("chain")
def chain_command(
    ctx: typer.Context,
    full: Annotated[bool, typer.Option("--full", help="Force full syncs")] = False,
    no_crm: Annotated[bool, typer.Option("--no-crm", help="Skip the CRM step")] = False,
    no_cleanup: Annotated[bool, typer.Option("--no-cleanup", help="Skip cleanup")] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Run the daily sync chain now."""
    options = {"full": full, "include_crm": not no_crm, "include_cleanup": not no_cleanup}
    summary = _with_service(ctx, lambda s: s.run_daily_sync_chain(options))
    if json_output:
        console.print(json.dumps(summary, indent=2, default=str))
        return
    _print_chain(summary)


@app.command("status")
def status_command(
    ctx: typer.Context,
) -> None:
    """Show the scheduler enable gate and alert settings."""
    async def action(service: SchedulerService) -> dict[str, Any]:
        return service.get_scheduler_status()

    status = _with_service(ctx, action)
    console.print(json.dumps(status, indent=2, default=str))


if __name__ == "__main__":
    app()
