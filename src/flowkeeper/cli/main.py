"""flowkeeper CLI application."""

from __future__ import annotations

import asyncio
import json
import re
import sys
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from flowkeeper import __version__
from flowkeeper.config import ConfigError, load_worktree_config
from flowkeeper.core.autoheal import SUPERVISOR_LOG_NAME
from flowkeeper.core.control import (
    ControlError,
    pause_workflow,
    restart_supervisor,
    resume_workflow,
    start_detached,
    stop_supervisor,
    workflow_status,
)
from flowkeeper.core.fleet import FleetReport, WorktreeFleetCoordinator
from flowkeeper.core.supervisor import Supervisor, SupervisorAlreadyRunning
from flowkeeper.db import format_age
from flowkeeper.models import SupervisorConfig, WorktreeStatus

# Initialize
app = typer.Typer(
    name="flowkeeper",
    help="flowkeeper - keeps long-running workflow programs alive",
    no_args_is_help=True,
)
console = Console()

WORKTREE_OPTION = typer.Option(None, "--worktree", "-w", help="Target a specific worktree (branch name)")
ALL_WORKTREES_OPTION = typer.Option(False, "--all-worktrees", "-a", help="Target every configured worktree")

LOG_POLL_INTERVAL = 1.0


def setup_logging(verbose: bool = False, config: SupervisorConfig | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    # Supervisor log (its tail is handed to the repair agent)
    if config is not None:
        config.logs_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            config.logs_dir / SUPERVISOR_LOG_NAME,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
            level=level,
            rotation="10 MB",
            retention=5,
        )


def _load(worktree: str | None) -> SupervisorConfig:
    try:
        return load_worktree_config(worktree)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _print_report(report: FleetReport) -> None:
    if not report.outcomes:
        console.print("[yellow]No worktrees with a flowkeeper config found[/yellow]")
        return

    for outcome in report.outcomes:
        if not outcome.ok:
            console.print(f"[red]✗ {outcome.name}: {outcome.message}[/red]")
        elif outcome.skipped:
            console.print(f"[dim]- {outcome.name}: {outcome.message}[/dim]")
        else:
            console.print(f"[green]✓ {outcome.name}: {outcome.message}[/green]")

    done = len(report.succeeded)
    total = len([o for o in report.outcomes if not o.skipped])
    color = "green" if report.ok else "red"
    console.print(f"\n[{color}]{report.action.capitalize()}: {done}/{total} worktree(s) succeeded[/{color}]")


def _finish(report: FleetReport) -> None:
    _print_report(report)
    if report.exit_code:
        raise typer.Exit(report.exit_code)


# ============================================================================
# Supervisor Commands
# ============================================================================


@app.command("start")
def start(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in foreground"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Skip the companion and only log notifications"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Start the supervisor."""
    setup_logging(verbose)

    if all_worktrees:
        _finish(WorktreeFleetCoordinator().start_all(dry_run=dry_run, verbose=verbose))
        return

    if foreground:
        run(worktree=worktree, dry_run=dry_run, verbose=verbose)
        return

    config = _load(worktree)
    console.print("[blue]Starting supervisor in background...[/blue]")
    try:
        pid = start_detached(config, worktree, dry_run=dry_run, verbose=verbose)
    except ControlError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Supervisor started (PID: {pid})[/green]")
    console.print(f"[dim]Logs: {config.logs_dir}[/dim]")


@app.command("run", hidden=True)
def run(
    worktree: Optional[str] = WORKTREE_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Skip the companion and only log notifications"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run the supervisor in this process until it is stopped."""
    config = _load(worktree)
    setup_logging(verbose, config)

    supervisor = Supervisor(config, dry_run=dry_run)
    try:
        asyncio.run(supervisor.run())
    except SupervisorAlreadyRunning as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    except Exception as e:
        logger.error(f"Supervisor error: {e}")
        raise typer.Exit(1)


@app.command("stop")
def stop(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
    keep_companion: bool = typer.Option(False, "--keep-companion", help="Leave the companion process running"),
    timeout: int = typer.Option(30, "--timeout", "-t", help="Shutdown timeout in seconds"),
) -> None:
    """Stop the supervisor and its workflow."""
    setup_logging()

    if all_worktrees:
        _finish(WorktreeFleetCoordinator().stop_all(keep_companion=keep_companion))
        return

    config = _load(worktree)
    try:
        pid = stop_supervisor(config, keep_companion=keep_companion, timeout=timeout)
    except ControlError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Supervisor stopped (PID: {pid})[/green]")
    if keep_companion:
        console.print("[dim]Companion left running[/dim]")


@app.command("restart")
def restart(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
) -> None:
    """Restart the workflow now, resetting the restart counters."""
    setup_logging()

    if all_worktrees:
        _finish(WorktreeFleetCoordinator().restart_all())
        return

    config = _load(worktree)
    try:
        pid = restart_supervisor(config)
    except ControlError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Restart requested (supervisor PID: {pid})[/green]")


@app.command("pause")
def pause(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
) -> None:
    """Pause auto-restart and hang detection; the supervisor keeps running."""
    setup_logging()

    if all_worktrees:
        _finish(WorktreeFleetCoordinator().pause_all())
        return

    config = _load(worktree)
    try:
        pause_workflow(config)
    except ControlError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)

    console.print("[green]✓ Workflow paused[/green]")
    console.print("[dim]Use 'flowkeeper resume' to continue[/dim]")


@app.command("resume")
def resume(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
) -> None:
    """Resume a paused workflow."""
    setup_logging()

    if all_worktrees:
        _finish(WorktreeFleetCoordinator().resume_all())
        return

    config = _load(worktree)
    try:
        duration = resume_workflow(config)
    except ControlError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)

    console.print("[green]✓ Workflow resumed[/green]")
    if duration:
        console.print(f"   Paused for: {duration}")


# ============================================================================
# Logs
# ============================================================================

SINCE_PATTERN = re.compile(r"^(\d+)([smhd])$")
SINCE_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class LogLevel(str, Enum):
    """Levels the supervisor log can be filtered by."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def parse_since(value: str) -> timedelta:
    """Parse durations like ``30s``, ``10m``, ``2h`` or ``1d``."""
    match = SINCE_PATTERN.match(value.strip())
    if not match:
        raise typer.BadParameter("Use a duration like 5s, 10m, 2h or 1d", param_hint="--since")
    return timedelta(seconds=int(match.group(1)) * SINCE_UNITS[match.group(2)])


def _line_level(line: str) -> str | None:
    parts = line.split(" | ", 2)
    if len(parts) < 3:
        return None
    return parts[1].strip().lower()


def _line_time(line: str) -> datetime | None:
    try:
        return datetime.strptime(line[:19], LOG_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def filter_log_lines(
    lines: list[str],
    level: LogLevel | None = None,
    since: timedelta | None = None,
) -> list[str]:
    """Keep lines at ``level`` and newer than ``since``.

    Lines without a timestamp (tracebacks, wrapped output) are kept by the
    time filter.
    """
    result = [line for line in lines if line.strip()]
    if since is not None:
        cutoff = datetime.now() - since
        result = [line for line in result if (_line_time(line) or cutoff) >= cutoff]
    if level is not None:
        result = [line for line in result if _line_level(line) == level.value]
    return result


def _print_log_lines(lines: list[str]) -> None:
    for line in lines:
        level = _line_level(line)
        style = {"error": "red", "critical": "bold red", "warning": "yellow"}.get(level or "")
        console.print(line, style=style, markup=False, highlight=False, soft_wrap=True)


@app.command("logs")
def logs(
    worktree: Optional[str] = WORKTREE_OPTION,
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    level: Optional[LogLevel] = typer.Option(None, "--level", "-l", help="Only show lines at this level"),
    since: Optional[str] = typer.Option(None, "--since", help="Only show lines newer than this (e.g. 10m, 2h)"),
) -> None:
    """Show supervisor logs."""
    config = _load(worktree)
    log_file = config.logs_dir / SUPERVISOR_LOG_NAME
    window = parse_since(since) if since else None

    if not log_file.exists():
        console.print(f"[red]Error: Log file not found at {log_file}[/red]")
        console.print("[dim]Has the supervisor been started? Try 'flowkeeper start'[/dim]")
        raise typer.Exit(1)

    with open(log_file, errors="replace") as f:
        content = f.read()
        position = f.tell()

    selected = filter_log_lines(content.splitlines(), level, window)
    _print_log_lines(selected[-lines:] if lines > 0 else selected)

    if not follow:
        return

    console.print("\n[dim]--- Following logs (Ctrl+C to stop) ---[/dim]\n")
    try:
        while True:
            time.sleep(LOG_POLL_INTERVAL)
            try:
                size = log_file.stat().st_size
            except FileNotFoundError:
                continue
            if size < position:
                # Rotated
                position = 0
            if size == position:
                continue
            with open(log_file, errors="replace") as f:
                f.seek(position)
                new_content = f.read()
                position = f.tell()
            _print_log_lines(filter_log_lines(new_content.splitlines(), level, window))
    except KeyboardInterrupt:
        console.print()


# ============================================================================
# Status
# ============================================================================


def _status_color(status: str) -> str:
    return {
        "running": "green",
        "done": "blue",
        "error": "red",
    }.get(status, "dim")


def _render_status(status: WorktreeStatus) -> Table:
    table = Table(title=status.name, show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    if status.supervisor_running:
        table.add_row("Supervisor", f"[green]running (PID: {status.supervisor_pid})[/green]")
    else:
        table.add_row("Supervisor", "[red]not running[/red]")

    color = _status_color(status.status)
    table.add_row("Status", f"[{color}]{status.status}[/{color}]")

    if status.summary:
        table.add_row("Summary", status.summary)

    if status.heartbeat:
        age = format_age(status.heartbeat_age_seconds)
        marker = "[green]✓[/green]" if status.heartbeat_ok else "[red]stale[/red]"
        table.add_row("Heartbeat", f"{age} {marker}")
    elif status.status != "not started":
        table.add_row("Heartbeat", "[red]never[/red]")

    if status.last_error:
        table.add_row("Last Error", f"[red]{status.last_error}[/red]")

    if status.paused:
        since = status.paused_at.strftime("%Y-%m-%d %H:%M:%S") if status.paused_at else "unknown"
        table.add_row("Paused", f"[yellow]since {since}[/yellow]")

    if status.recovery_phase:
        table.add_row("Recovery", status.recovery_phase)
    table.add_row("Restarts", str(status.restart_attempts))
    table.add_row("Auto-heals", str(status.autoheal_attempts))
    if status.child_pid:
        table.add_row("Workflow PID", str(status.child_pid))

    return table


@app.command("status")
def status(
    worktree: Optional[str] = WORKTREE_OPTION,
    all_worktrees: bool = ALL_WORKTREES_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show workflow and supervisor status."""
    setup_logging()

    if all_worktrees:
        report = WorktreeFleetCoordinator().status_all()
        statuses = [o.data for o in report.outcomes if o.ok and o.data is not None]
        if as_json:
            console.print_json(json.dumps([s.model_dump(mode="json") for s in statuses]))
        else:
            for item in statuses:
                console.print(_render_status(item))
                console.print()
            for outcome in report.failed:
                console.print(f"[red]✗ {outcome.name}: {outcome.message}[/red]")
        if report.exit_code:
            raise typer.Exit(report.exit_code)
        return

    config = _load(worktree)
    result = workflow_status(config)

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        console.print(_render_status(result))
        if result.last_error or result.status == "error":
            console.print("[dim]Check logs with 'flowkeeper logs --level error'[/dim]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"flowkeeper v{__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
