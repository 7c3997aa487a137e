"""Commands addressed to one worktree's supervisor from another process.

The supervisor is found through its PID file and driven by signals:
SIGTERM stops it, SIGUSR2 stops it but leaves the companion running,
SIGUSR1 restarts the workflow. Pause state goes through the state store.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from loguru import logger

from flowkeeper.db import StateStore, format_duration, heartbeat_age, is_heartbeat_stale, utcnow
from flowkeeper.models import PauseState, SupervisorConfig, WorktreeStatus
from flowkeeper.notify import EventType, NotificationEvent, Notifier, build_notifier, safe_notify
from flowkeeper.pid import PidRegistry, check_pid

SUPERVISOR_OUTPUT_NAME = "supervisor.out"


class ControlError(Exception):
    """A control command could not be carried out."""

    pass


class SupervisorNotRunning(ControlError):
    """No live supervisor for the worktree."""

    pass


class WorkflowNotPaused(ControlError):
    """Resume requested for a workflow that is not paused."""

    pass


def _running_pid(config: SupervisorConfig, registry: PidRegistry) -> int:
    pid = registry.read(registry.path_for(config))
    if pid is None:
        raise SupervisorNotRunning(f"No running supervisor found for worktree '{config.display_name}'")
    return pid


def _send_signal(pid: int, sig: signal.Signals) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError as e:
        raise SupervisorNotRunning(f"Supervisor process {pid} not found") from e
    except PermissionError as e:
        raise ControlError(f"Not allowed to signal supervisor {pid}: {e}") from e


def _notify(notifier: Notifier | None, event: NotificationEvent) -> None:
    asyncio.run(safe_notify(notifier, event))


def start_detached(
    config: SupervisorConfig,
    worktree: str | None = None,
    dry_run: bool = False,
    verbose: bool = False,
    registry: PidRegistry | None = None,
    wait: float = 5.0,
) -> int:
    """Start a supervisor for the worktree as a separate background process.

    Returns the supervisor's PID once it has written its PID file.
    """
    registry = registry or PidRegistry()
    pid_path = registry.path_for(config)
    existing = registry.read(pid_path)
    if existing:
        raise ControlError(f"Supervisor is already running (PID: {existing})")

    cmd = [sys.executable, "-m", "flowkeeper", "run"]
    if worktree:
        cmd.extend(["--worktree", worktree])
    if dry_run:
        cmd.append("--dry-run")
    if verbose:
        cmd.append("--verbose")

    config.logs_dir.mkdir(parents=True, exist_ok=True)
    cwd = Path(config.workdir) if config.workdir else None

    with open(config.logs_dir / SUPERVISOR_OUTPUT_NAME, "a") as output:
        try:
            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise ControlError(f"Failed to start supervisor: {e}") from e

    logger.debug(f"Spawned supervisor for '{config.display_name}' (PID {process.pid})")

    deadline = time.time() + wait
    while time.time() < deadline:
        if registry.read(pid_path) == process.pid:
            return process.pid
        returncode = process.poll()
        if returncode is not None:
            raise ControlError(
                f"Supervisor exited with code {returncode}, "
                f"see {config.logs_dir / SUPERVISOR_OUTPUT_NAME}"
            )
        time.sleep(0.1)

    logger.warning(f"Supervisor (PID {process.pid}) has not written its PID file yet")
    return process.pid


def stop_supervisor(
    config: SupervisorConfig,
    keep_companion: bool = False,
    timeout: float = 30.0,
    registry: PidRegistry | None = None,
) -> int:
    """Stop the worktree's supervisor, killing it if it does not exit in time."""
    registry = registry or PidRegistry()
    pid_path = registry.path_for(config)
    pid = _running_pid(config, registry)

    sig = signal.SIGUSR2 if keep_companion else signal.SIGTERM
    logger.info(f"Stopping supervisor (PID: {pid})...")
    try:
        _send_signal(pid, sig)
    except SupervisorNotRunning:
        registry.delete(pid_path)
        return pid

    start = time.time()
    while time.time() - start < timeout:
        if not check_pid(pid):
            registry.delete(pid_path)
            return pid
        time.sleep(0.5)

    logger.warning("Supervisor did not stop gracefully, force killing...")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    finally:
        registry.delete(pid_path)
    return pid


def restart_supervisor(config: SupervisorConfig, registry: PidRegistry | None = None) -> int:
    """Ask the supervisor to restart the workflow immediately."""
    registry = registry or PidRegistry()
    pid = _running_pid(config, registry)
    _send_signal(pid, signal.SIGUSR1)
    logger.info(f"Sent restart request to supervisor (PID: {pid})")
    return pid


def pause_workflow(
    config: SupervisorConfig,
    registry: PidRegistry | None = None,
    notifier: Notifier | None = None,
    store: StateStore | None = None,
) -> PauseState:
    """Persist the pause flag. The workflow keeps running; auto-restart stops."""
    registry = registry or PidRegistry()
    _running_pid(config, registry)
    store = store or StateStore(config.db_path)

    current = store.get_pause_state()
    if current.paused:
        logger.info("Workflow is already paused")
        return current

    state = store.set_paused()
    logger.info("Workflow paused. Supervisor will stop auto-restart and health checks.")

    _notify(notifier or build_notifier(config), NotificationEvent(
        type=EventType.PAUSE,
        title="Workflow Paused",
        message="The workflow has been paused. Supervisor remains active.\n\nUse `flowkeeper resume` to continue.",
        worktree=config.display_name,
        details={"Timestamp": state.paused_at.isoformat() if state.paused_at else None},
    ))
    return state


def resume_workflow(
    config: SupervisorConfig,
    registry: PidRegistry | None = None,
    notifier: Notifier | None = None,
    store: StateStore | None = None,
) -> str | None:
    """Clear the pause, reset the restart counter and have the supervisor relaunch.

    Returns how long the workflow was paused, when known.
    """
    registry = registry or PidRegistry()
    pid = _running_pid(config, registry)
    store = store or StateStore(config.db_path)

    current = store.get_pause_state()
    if not current.paused:
        raise WorkflowNotPaused(f"Workflow is not paused for worktree '{config.display_name}'")

    duration = None
    if current.paused_at is not None:
        duration = format_duration((utcnow() - current.paused_at).total_seconds())

    store.clear_pause()

    _notify(notifier or build_notifier(config), NotificationEvent(
        type=EventType.RESUME,
        title="Workflow Resumed",
        message="The workflow has been resumed.",
        worktree=config.display_name,
        details={"Paused for": duration},
    ))

    _send_signal(pid, signal.SIGUSR1)
    logger.info("Workflow resumed. Supervisor will restart the workflow process.")
    return duration


def workflow_status(
    config: SupervisorConfig,
    registry: PidRegistry | None = None,
    store: StateStore | None = None,
) -> WorktreeStatus:
    """Last known workflow state plus supervisor liveness."""
    registry = registry or PidRegistry()
    store = store or StateStore(config.db_path)

    pid = registry.read(registry.path_for(config))
    status = WorktreeStatus(
        name=config.display_name,
        supervisor_pid=pid,
        supervisor_running=pid is not None,
    )

    if not store.exists:
        return status

    state = store.read_workflow_state()
    if state is None:
        status.status = "unavailable"
        return status

    threshold = config.health.hang_threshold_seconds
    status.status = state.status.value
    status.summary = state.summary
    status.heartbeat = state.heartbeat
    status.heartbeat_age_seconds = heartbeat_age(state.heartbeat)
    status.heartbeat_ok = not is_heartbeat_stale(state.heartbeat, threshold)
    status.last_error = state.last_error

    pause = store.get_pause_state()
    status.paused = pause.paused
    status.paused_at = pause.paused_at

    recovery = store.read_recovery()
    status.restart_attempts = recovery["restart_attempts"]
    status.autoheal_attempts = recovery["autoheal_attempts"]
    status.recovery_phase = recovery["recovery_phase"]
    status.child_pid = recovery["child_pid"] if pid is not None else None

    return status
