"""Crash recovery: auto-heal first, then restart with backoff.

The counters live in an immutable ``RecoveryState``; the transitions are plain
functions so the policy can be tested without spawning processes.
``CrashRecoveryEngine`` drives them against a real (or fake) launcher.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from loguru import logger

from flowkeeper.core.adapters import AutoHealAdapter, AutoHealResult
from flowkeeper.core.autoheal import attempt_autoheal
from flowkeeper.core.process import ProcessError, ProcessExit
from flowkeeper.db import StateStore, StateUnavailable
from flowkeeper.models import AutoHealConfig, RecoveryPhase, SupervisorConfig
from flowkeeper.notify import EventType, NotificationEvent, Notifier, safe_notify


@dataclass(frozen=True)
class RecoveryState:
    """Recovery counters of one supervised workflow."""

    restart_attempts: int = 0
    autoheal_attempts: int = 0
    is_handling_hang: bool = False
    phase: RecoveryPhase = RecoveryPhase.RUNNING

    def reset(self) -> "RecoveryState":
        """Back to zero, as after a manual or file-triggered restart."""
        return RecoveryState()

    def exit_observed(self) -> "RecoveryState":
        return replace(self, is_handling_hang=False)

    def begin_hang(self) -> "RecoveryState":
        return replace(self, is_handling_hang=True)

    def with_phase(self, phase: RecoveryPhase) -> "RecoveryState":
        return replace(self, phase=phase)


@dataclass(frozen=True)
class RecoveryDecision:
    """What to do after auto-heal did not bring the workflow back."""

    terminal: bool
    delay: float | None
    next_state: RecoveryState


def backoff_delay(schedule: list[float], attempt: int) -> float:
    """Delay before restart number ``attempt`` (0-indexed); the last entry repeats."""
    if not schedule:
        raise ValueError("Backoff schedule must not be empty")
    return schedule[min(max(attempt, 0), len(schedule) - 1)]


def should_autoheal(state: RecoveryState, config: AutoHealConfig) -> bool:
    return config.enabled and state.autoheal_attempts < config.max_attempts


def after_autoheal(state: RecoveryState, success: bool) -> RecoveryState:
    """Success resets both counters; failure spends one auto-heal attempt."""
    if success:
        return state.reset()
    return replace(state, autoheal_attempts=state.autoheal_attempts + 1)


def plan_restart(
    state: RecoveryState,
    max_attempts: int,
    schedule: list[float],
) -> RecoveryDecision:
    """Decide whether and when to restart after a crash."""
    if state.restart_attempts >= max_attempts:
        return RecoveryDecision(
            terminal=True,
            delay=None,
            next_state=state.with_phase(RecoveryPhase.STOPPED_TERMINAL),
        )

    return RecoveryDecision(
        terminal=False,
        delay=backoff_delay(schedule, state.restart_attempts),
        next_state=replace(
            state,
            restart_attempts=state.restart_attempts + 1,
            phase=RecoveryPhase.RUNNING,
        ),
    )


class CrashRecoveryEngine:
    """Handles every exit of the workflow process.

    Exits are handled one at a time: the supervisor only calls
    ``handle_exit`` from the single exit event of the current child.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        launch: Callable[[], Awaitable[None]],
        adapter: AutoHealAdapter | None = None,
        notifier: Notifier | None = None,
        store: StateStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        is_paused: Callable[[], bool] | None = None,
        child_pid: Callable[[], int | None] | None = None,
    ):
        """Initialize the recovery engine.

        Args:
            config: Supervisor configuration (health and autoheal sections).
            launch: Starts a new child. Raises ProcessError on failure.
            adapter: Repair agent used for auto-heal.
            notifier: Receives auto-heal and restart-exhausted events.
            store: Where counters are mirrored for status display.
            sleep: Backoff sleep, injectable for tests.
            is_paused: Returns True while the workflow is paused.
            child_pid: Returns the current child PID, for the store mirror.
        """
        self.config = config
        self._launch = launch
        self._adapter = adapter
        self._notifier = notifier
        self._store = store
        self._sleep = sleep
        self._is_paused = is_paused or (lambda: False)
        self._child_pid = child_pid or (lambda: None)
        self.state = RecoveryState()

    @property
    def is_handling_hang(self) -> bool:
        return self.state.is_handling_hang

    def begin_hang(self) -> bool:
        """Mark a hang kill in progress. Returns False if one already is."""
        if self.state.is_handling_hang:
            return False
        self.state = self.state.begin_hang()
        return True

    def reset(self) -> None:
        """Zero both counters (manual restart, resume, file change)."""
        self.state = self.state.reset()
        self.persist()

    def _paused(self) -> bool:
        try:
            return self._is_paused()
        except StateUnavailable as e:
            logger.warning(f"Could not read pause state, treating workflow as not paused: {e}")
            return False

    def set_phase(self, phase: RecoveryPhase) -> None:
        self.state = self.state.with_phase(phase)
        self.persist()

    def persist(self) -> None:
        """Mirror the counters to the state store."""
        if self._store is None:
            return
        try:
            self._store.write_recovery(
                self.state.restart_attempts,
                self.state.autoheal_attempts,
                self.state.phase,
                self._child_pid(),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist recovery state: {e}")

    async def handle_exit(self, exit: ProcessExit) -> RecoveryState:
        """Recover from a child exit (crash or hang kill).

        Returns once a new child is running, recovery is terminal, or the
        workflow is paused. The backoff sleep can be cancelled.
        """
        while True:
            if await self._recover(exit):
                return self.state
            if self.state.phase in (RecoveryPhase.STOPPED_TERMINAL, RecoveryPhase.PAUSED):
                return self.state
            # Relaunch failed: treat it like another crash
            exit = ProcessExit(returncode=None)

    async def _recover(self, exit: ProcessExit) -> bool:
        if self.state.is_handling_hang:
            logger.info("Workflow exit was triggered by hang detection")
        self.state = self.state.exit_observed()

        if self._paused():
            logger.info("Workflow is paused, not restarting")
            self.set_phase(RecoveryPhase.PAUSED)
            return False

        autoheal = self.config.autoheal
        if should_autoheal(self.state, autoheal):
            logger.info(
                f"Attempting auto-heal ({self.state.autoheal_attempts + 1}/{autoheal.max_attempts})..."
            )
            self.set_phase(RecoveryPhase.RECOVERING_AUTOHEAL)
            result = await self._autoheal(exit)
            self.state = after_autoheal(self.state, result.success)

            if result.success:
                logger.info("Auto-heal successful! Resetting restart counter.")
                await self._notify_autoheal(result)
                return await self._relaunch()

            logger.warning("Auto-heal failed. Falling back to normal restart logic.")
            self.persist()
            await self._notify_autoheal(result)
        elif autoheal.enabled:
            logger.warning(
                f"Auto-heal max attempts ({autoheal.max_attempts}) exceeded. Reverting to restart-only."
            )

        health = self.config.health
        decision = plan_restart(self.state, health.max_restart_attempts, health.restart_backoff_seconds)

        if decision.terminal:
            self.state = decision.next_state
            self.persist()
            logger.critical(
                f"Max restart attempts ({health.max_restart_attempts}) exceeded. "
                f"Not restarting the workflow until a manual restart."
            )
            await safe_notify(self._notifier, NotificationEvent(
                type=EventType.RESTART_EXHAUSTED,
                title="Workflow Stopped",
                message=(
                    f"The workflow crashed {health.max_restart_attempts} times in a row "
                    f"and will not be restarted automatically. Use `flowkeeper restart` once fixed."
                ),
                worktree=self.config.display_name,
                details={"Last exit": exit.describe()},
            ))
            return False

        logger.info(
            f"Restarting workflow in {decision.delay}s "
            f"(attempt {self.state.restart_attempts + 1}/{health.max_restart_attempts})..."
        )
        self.set_phase(RecoveryPhase.RECOVERING_BACKOFF)
        await self._sleep(decision.delay)

        if self._paused():
            logger.info("Workflow was paused during backoff, not restarting")
            self.set_phase(RecoveryPhase.PAUSED)
            return False

        self.state = decision.next_state
        return await self._relaunch()

    async def _autoheal(self, exit: ProcessExit) -> AutoHealResult:
        if self._adapter is None:
            return AutoHealResult(success=False, error="No auto-heal adapter configured")
        return await attempt_autoheal(
            self.config,
            self._adapter,
            exit,
            self.state.restart_attempts,
            self._store,
        )

    async def _relaunch(self) -> bool:
        self.state = self.state.with_phase(RecoveryPhase.RUNNING)
        try:
            await self._launch()
        except ProcessError as e:
            logger.error(f"Failed to relaunch workflow: {e}")
            self.persist()
            return False
        self.persist()
        return True

    async def _notify_autoheal(self, result: AutoHealResult) -> None:
        if result.success:
            event = NotificationEvent(
                type=EventType.AUTOHEAL_SUCCESS,
                title="Auto-Heal Successful",
                message=(
                    f"The workflow crashed but was automatically repaired by {self._adapter.name}. "
                    f"The process has been restarted with the patched program."
                ),
                worktree=self.config.display_name,
            )
        else:
            event = NotificationEvent(
                type=EventType.AUTOHEAL_FAILURE,
                title="Auto-Heal Failed",
                message=(
                    "The workflow crashed and auto-heal was unable to fix it. "
                    "Falling back to normal restart logic."
                ),
                worktree=self.config.display_name,
                details={"Error": result.error},
            )
        await safe_notify(self._notifier, event)
