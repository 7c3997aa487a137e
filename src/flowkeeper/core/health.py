"""Hang detection through the workflow's heartbeat."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable

from loguru import logger

from flowkeeper.core.process import ProcessHandle
from flowkeeper.core.recovery import CrashRecoveryEngine
from flowkeeper.db import (
    KEY_HEARTBEAT,
    StateStore,
    StateUnavailable,
    format_age,
    heartbeat_age,
    is_heartbeat_stale,
)
from flowkeeper.models import SupervisorConfig
from flowkeeper.notify import EventType, NotificationEvent, Notifier, safe_notify


class HealthCheckResult:
    """Result of a health check."""

    def __init__(self, healthy: bool, message: str = "", details: dict | None = None):
        self.healthy = healthy
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def __bool__(self) -> bool:
        return self.healthy

    def __repr__(self) -> str:
        status = "healthy" if self.healthy else "unhealthy"
        return f"HealthCheckResult({status}, {self.message!r})"


class HealthMonitor:
    """Kills the workflow when its heartbeat goes stale.

    The kill produces an ordinary exit, which crash recovery then handles.
    The recovery engine's hang flag makes sure only one kill is issued per
    stale window.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        store: StateStore,
        recovery: CrashRecoveryEngine,
        get_child: Callable[[], ProcessHandle | None],
        notifier: Notifier | None = None,
        is_paused: Callable[[], bool] | None = None,
        interval: float | None = None,
    ):
        self.config = config
        self._store = store
        self._recovery = recovery
        self._get_child = get_child
        self._notifier = notifier
        self._is_paused = is_paused or (lambda: store.is_paused(strict=True))
        self.interval = interval if interval is not None else config.health.check_interval_seconds
        self._last_result: HealthCheckResult | None = None
        self._running = False

    @property
    def last_result(self) -> HealthCheckResult | None:
        return self._last_result

    def _read_heartbeat(self, state_heartbeat: str | None) -> str | None:
        key = self.config.health.heartbeat_key
        if key == KEY_HEARTBEAT:
            return state_heartbeat
        values = self._store.read_values((key,), strict=True) or {}
        return values.get(key)

    async def check_once(self) -> HealthCheckResult:
        """Run a single health check."""
        child = self._get_child()
        if child is None or not child.is_running():
            logger.warning("Health check: workflow process is not running")
            result = HealthCheckResult(True, "Workflow not running", {"skipped": True})
            self._last_result = result
            return result

        # A missing store reads as an empty state: no heartbeat, so stale.
        # A store that exists but cannot be read skips this tick.
        try:
            paused = self._is_paused()
            if not paused:
                state = self._store.query_workflow_state(strict=True)
                heartbeat = self._read_heartbeat(state.heartbeat)
        except StateUnavailable as e:
            logger.warning(f"Health check skipped: {e}")
            result = HealthCheckResult(False, "State store unavailable", {"skipped": True})
            self._last_result = result
            return result

        if paused:
            result = HealthCheckResult(True, "Workflow paused", {"skipped": True})
            self._last_result = result
            return result

        threshold = self.config.health.hang_threshold_seconds
        age = heartbeat_age(heartbeat)

        if not is_heartbeat_stale(heartbeat, threshold):
            result = HealthCheckResult(True, "Heartbeat fresh", {"age_seconds": age})
            self._last_result = result
            return result

        if not self._recovery.begin_hang():
            result = HealthCheckResult(False, "Hang already being handled", {"age_seconds": age})
            self._last_result = result
            return result

        logger.error(
            f"Health check: heartbeat is stale (last: {heartbeat or 'never'}, "
            f"threshold: {threshold}s). Killing hung process..."
        )

        await safe_notify(self._notifier, NotificationEvent(
            type=EventType.HANG,
            title="Workflow Hang Detected",
            message="The workflow heartbeat is stale. Killing hung process and restarting...",
            worktree=self.config.display_name,
            details={
                "Last heartbeat": f"`{heartbeat}` ({format_age(age)})" if heartbeat else "never",
                "Threshold": f"{threshold}s",
            },
        ))

        # Single kill; the exit is consumed by crash recovery
        if child.is_running():
            child.kill()
            logger.info(f"Hung workflow process killed (PID {child.pid})")

        result = HealthCheckResult(
            False,
            "Heartbeat stale, workflow killed",
            {"age_seconds": age, "pid": child.pid},
        )
        self._last_result = result
        return result

    async def run(self) -> None:
        """Run the health check loop."""
        self._running = True
        logger.info(f"Health monitor started (every {self.interval}s)")

        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Health check failed: {e}")

        logger.info("Health monitor stopped")

    def stop(self) -> None:
        """Stop the health monitor."""
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if health monitor is running."""
        return self._running
