"""Supervisor for one worktree's workflow process."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from flowkeeper.core.adapters import AutoHealAdapter, get_adapter
from flowkeeper.core.health import HealthMonitor
from flowkeeper.core.process import (
    ProcessError,
    ProcessExit,
    ProcessHandle,
    ProcessLauncher,
    terminate_and_wait,
)
from flowkeeper.core.recovery import CrashRecoveryEngine
from flowkeeper.core.reloader import DEFAULT_DEBOUNCE_SECONDS, FileWatchReloader
from flowkeeper.db import StateStore, format_duration, utcnow
from flowkeeper.models import RecoveryPhase, SupervisorConfig
from flowkeeper.notify import (
    EventType,
    NotificationEvent,
    Notifier,
    build_notifier,
    format_status_message,
    safe_notify,
)
from flowkeeper.pid import PidRegistry


class SupervisorAlreadyRunning(Exception):
    """Another live supervisor owns this worktree."""

    def __init__(self, pid: int, pid_path: Path):
        super().__init__(f"Supervisor is already running (PID: {pid}, PID file: {pid_path})")
        self.pid = pid
        self.pid_path = pid_path


class Supervisor:
    """Keeps one workflow process alive.

    Everything runs on one event loop: the child's exit watcher, crash
    recovery, the health loop, the status broadcast loop and the file-change
    debounce timer. The child runs in its own session, so a supervisor
    failure never takes it down and a child crash is just an exit event.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        store: StateStore | None = None,
        launcher: ProcessLauncher | None = None,
        notifier: Notifier | None = None,
        pid_registry: PidRegistry | None = None,
        adapter: AutoHealAdapter | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        reload_debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        stop_grace_period: float = 10.0,
    ):
        self.config = config
        self.dry_run = dry_run
        self.store = store or StateStore(config.db_path)
        self.launcher = launcher or ProcessLauncher()
        self.notifier = notifier or build_notifier(config, dry_run=dry_run)
        self.pid_registry = pid_registry or PidRegistry()
        self.stop_grace_period = stop_grace_period

        if adapter is None:
            adapter = get_adapter(config.autoheal.engine, config.autoheal.timeout_seconds)

        self.recovery = CrashRecoveryEngine(
            config,
            launch=self._launch_child,
            adapter=adapter,
            notifier=self.notifier,
            store=self.store,
            sleep=sleep,
            is_paused=lambda: self.store.is_paused(strict=True),
            child_pid=self._current_child_pid,
        )
        self.health = HealthMonitor(
            config,
            self.store,
            self.recovery,
            get_child=lambda: self._child,
            notifier=self.notifier,
        )
        self.reloader = FileWatchReloader(
            config.script_path,
            self._reload_after_change,
            debounce=reload_debounce,
        )

        self._child: ProcessHandle | None = None
        self._companion: ProcessHandle | None = None
        self._exit_watchers: set[asyncio.Task] = set()
        self._recovery_task: asyncio.Task | None = None
        self._control_tasks: set[asyncio.Task] = set()
        self._loop_tasks: list[asyncio.Task] = []
        self._lock = asyncio.Lock()
        self._shutdown_event = asyncio.Event()
        self._keep_companion = False
        self._running = False
        self._stopped = False

    # Lifecycle

    async def start(self) -> None:
        """Start the companion, the workflow and the monitoring loops."""
        pid_path = self.pid_registry.path_for(self.config)
        existing = self.pid_registry.read(pid_path)
        if existing and existing != os.getpid():
            raise SupervisorAlreadyRunning(existing, pid_path)

        logger.info(f"Starting supervisor for worktree '{self.config.display_name}'...")
        self._running = True

        if self.dry_run:
            logger.info("Skipping companion startup (dry-run mode)")
        elif self.config.companion.enabled:
            await self._start_companion()

        await self._launch_or_recover()

        self.reloader.start()
        self._loop_tasks.append(asyncio.create_task(self.health.run()))
        if self.config.updates.enabled:
            self._loop_tasks.append(asyncio.create_task(self._status_update_loop()))

        self.pid_registry.write(pid_path, os.getpid())
        logger.info("Supervisor started successfully")

    async def run(self) -> None:
        """Start, serve until a shutdown is requested, then stop."""
        await self.start()
        self.install_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            self.remove_signal_handlers()
            await self.stop(keep_companion=self._keep_companion)

    async def stop(self, keep_companion: bool = False) -> None:
        """Stop everything and remove the PID file."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        logger.info("Stopping supervisor...")

        self.health.stop()
        self.reloader.stop()
        await self._cancel_recovery()

        for task in [*self._loop_tasks, *self._control_tasks]:
            task.cancel()
        for task in [*self._loop_tasks, *self._control_tasks]:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Background task ended with error: {e}")
        self._loop_tasks.clear()

        await self._stop_child()

        for task in list(self._exit_watchers):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if keep_companion:
            if self._companion is not None:
                logger.info("Keeping companion running (--keep-companion)")
        elif self._companion is not None and self._companion.is_running():
            logger.info("Stopping companion...")
            await terminate_and_wait(self._companion, self.stop_grace_period)

        self.recovery.persist()
        self.pid_registry.delete(self.pid_registry.path_for(self.config))
        logger.info("Supervisor stopped")

    async def restart(self) -> bool:
        """Kill and relaunch the workflow now, bypassing backoff and resetting counters.

        Returns False, without launching, if the old workflow could not be stopped.
        """
        async with self._lock:
            logger.info("Restarting workflow...")
            await self._cancel_recovery()
            if not await self._stop_child():
                logger.error("Previous workflow is still running, not launching another")
                return False
            self.recovery.reset()
            await self._launch_or_recover()
            logger.info("Workflow restarted successfully")
            return True

    async def pause(self) -> None:
        """Persist the pause flag; the workflow keeps running but is no longer restarted."""
        state = self.store.set_paused()
        self.recovery.set_phase(RecoveryPhase.PAUSED)
        logger.info("Workflow paused. Supervisor will stop auto-restart and health checks.")
        await safe_notify(self.notifier, NotificationEvent(
            type=EventType.PAUSE,
            title="Workflow Paused",
            message="The workflow has been paused. Supervisor remains active.",
            worktree=self.config.display_name,
            details={"Timestamp": state.paused_at.isoformat() if state.paused_at else None},
        ))

    async def resume(self) -> None:
        """Clear the pause flag and relaunch the workflow once."""
        previous = self.store.clear_pause()
        duration = None
        if previous.paused_at is not None:
            duration = format_duration((utcnow() - previous.paused_at).total_seconds())
        logger.info("Resuming workflow...")
        await safe_notify(self.notifier, NotificationEvent(
            type=EventType.RESUME,
            title="Workflow Resumed",
            message="The workflow has been resumed.",
            worktree=self.config.display_name,
            details={"Paused for": duration},
        ))
        await self.restart()

    # Control requests (from signal handlers)

    def request_shutdown(self, keep_companion: bool = False) -> None:
        """Ask ``run`` to stop the supervisor."""
        self._keep_companion = keep_companion
        self._shutdown_event.set()

    def request_restart(self) -> None:
        """Schedule a restart; it takes precedence over any backoff in progress."""
        if not self._running:
            return
        self._spawn_control_task(self.restart())

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def on_stop(name: str, keep_companion: bool) -> None:
            logger.info(f"Received {name}, stopping...")
            self.request_shutdown(keep_companion)

        def on_restart() -> None:
            logger.info("Received SIGUSR1, restarting workflow...")
            self.request_restart()

        loop.add_signal_handler(signal.SIGTERM, on_stop, "SIGTERM", False)
        loop.add_signal_handler(signal.SIGINT, on_stop, "SIGINT", False)
        loop.add_signal_handler(signal.SIGUSR2, on_stop, "SIGUSR2", True)
        loop.add_signal_handler(signal.SIGUSR1, on_restart)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGUSR2, signal.SIGUSR1):
            loop.remove_signal_handler(sig)

    # Status

    def snapshot(self) -> dict[str, Any]:
        """In-memory view of the supervisor."""
        state = self.recovery.state
        return {
            "worktree": self.config.display_name,
            "running": self._running,
            "child_pid": self._current_child_pid(),
            "child_running": bool(self._child and self._child.is_running()),
            "companion_pid": self._companion.pid if self._companion else None,
            "restart_attempts": state.restart_attempts,
            "autoheal_attempts": state.autoheal_attempts,
            "is_handling_hang": state.is_handling_hang,
            "phase": state.phase.value,
            "recovering": self._recovery_task is not None and not self._recovery_task.done(),
            "reload_pending": self.reloader.pending,
        }

    @property
    def child(self) -> ProcessHandle | None:
        return self._child

    @property
    def is_running(self) -> bool:
        """Check if the supervisor is running."""
        return self._running

    # Internals

    def _current_child_pid(self) -> int | None:
        if self._child is not None and self._child.is_running():
            return self._child.pid
        return None

    def _spawn_control_task(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._control_tasks.add(task)
        task.add_done_callback(self._control_task_done)

    def _control_task_done(self, task: asyncio.Task) -> None:
        self._control_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Supervisor control task failed")

    async def _launch_child(self) -> None:
        """Start a workflow process and watch for its exit. Raises ProcessError."""
        handle = await self.launcher.launch(self.config)
        self._child = handle
        watcher = asyncio.create_task(self._watch_child(handle))
        self._exit_watchers.add(watcher)
        watcher.add_done_callback(self._exit_watchers.discard)

    async def _launch_or_recover(self) -> None:
        try:
            await self._launch_child()
        except ProcessError as e:
            logger.error(f"Failed to start workflow: {e}")
            self._begin_recovery(ProcessExit(returncode=None))
            return
        self.recovery.persist()

    async def _watch_child(self, handle: ProcessHandle) -> None:
        exit = await handle.wait()

        if exit.intentional or not self._running:
            logger.info(f"Workflow (PID {handle.pid}) stopped")
            return
        if handle is not self._child:
            return

        logger.error(f"Workflow (PID {handle.pid}) {exit.describe()}")
        self._begin_recovery(exit)

    def _begin_recovery(self, exit: ProcessExit) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            logger.warning("Recovery already in progress, ignoring exit")
            return
        self._recovery_task = asyncio.create_task(self._recover(exit))

    async def _recover(self, exit: ProcessExit) -> None:
        try:
            await self.recovery.handle_exit(exit)
        except asyncio.CancelledError:
            logger.info("Crash recovery cancelled")
            raise
        except Exception:
            logger.exception("Crash recovery failed")

    async def _cancel_recovery(self) -> None:
        task = self._recovery_task
        self._recovery_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _stop_child(self) -> bool:
        """Stop the current workflow. Returns False if it could not be stopped."""
        child = self._child
        if child is None:
            return True
        if child.is_running():
            logger.info(f"Stopping workflow (PID {child.pid})...")
            try:
                await terminate_and_wait(child, self.stop_grace_period)
            except ProcessError as e:
                logger.error(f"Failed to stop workflow: {e}")
                return False
        self._child = None
        return True

    async def _reload_after_change(self) -> None:
        async with self._lock:
            logger.info("Restarting workflow due to program file change...")
            await self._cancel_recovery()
            if not await self._stop_child():
                logger.error("Previous workflow is still running, skipping reload")
                return
            self.recovery.reset()
            await self._launch_or_recover()
            logger.info("Workflow restarted successfully after file change")

        await safe_notify(self.notifier, NotificationEvent(
            type=EventType.RELOAD,
            title="Workflow Reloaded",
            message=(
                f"The workflow program `{self.config.script_path}` was modified "
                f"and the workflow process has been restarted."
            ),
            worktree=self.config.display_name,
        ))

    async def _start_companion(self) -> None:
        logger.info("Starting companion...")
        try:
            self._companion = await self.launcher.launch_companion(self.config)
        except ProcessError as e:
            logger.error(f"Failed to start companion: {e}")
            return
        watcher = asyncio.create_task(self._watch_companion(self._companion))
        self._exit_watchers.add(watcher)
        watcher.add_done_callback(self._exit_watchers.discard)

    async def _watch_companion(self, handle: ProcessHandle) -> None:
        exit = await handle.wait()
        if not exit.intentional and self._running:
            logger.warning(f"Companion (PID {handle.pid}) {exit.describe()}")

    async def _status_update_loop(self) -> None:
        interval = self.config.updates.interval_seconds
        logger.info(f"Starting status updates (every {interval}s)")
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.send_status_update()
            except Exception as e:
                logger.error(f"Failed to send status update: {e}")

    async def send_status_update(self) -> None:
        logger.info("Sending status update...")
        state = self.store.query_workflow_state()
        repo_name = Path(self.config.workdir).name if self.config.workdir else "unknown"
        branch = self.config.worktree.branch if self.config.worktree else "main"
        await safe_notify(self.notifier, NotificationEvent(
            type=EventType.STATUS_UPDATE,
            title="Status Update",
            message=f"{state.status.value}: {state.summary or 'no summary'}",
            worktree=self.config.display_name,
            text=format_status_message(repo_name, branch, state),
        ))
