"""State writer for workflow programs running under flowkeeper.

A workflow program creates one ``WorkflowStateWriter``, reports its progress
through it and lets it refresh the heartbeat on its own timer::

    with WorkflowStateWriter.from_env() as state:
        state.update(status="running", summary="Indexing repository")
        ...
        state.update(status="done", summary="All tasks finished")
"""

from __future__ import annotations

import os
import threading
from pathlib import Path

from loguru import logger

from flowkeeper.config import DB_ENV_VAR, HEARTBEAT_ENV_VAR
from flowkeeper.db import StateStore, utcnow
from flowkeeper.models import WorkflowStatus


DEFAULT_HEARTBEAT_INTERVAL = 30.0


class WorkflowStateWriter:
    """Owns the workflow's state handle and its periodic heartbeat."""

    def __init__(self, db_path: Path, heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL):
        self.store = StateStore(db_path)
        self.heartbeat_interval = heartbeat_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_env(cls, heartbeat_interval: float | None = None) -> "WorkflowStateWriter":
        """Build a writer for the database the supervisor passed in the environment.

        The heartbeat interval also comes from the environment unless given.
        """
        db_path = os.environ.get(DB_ENV_VAR)
        if not db_path:
            raise RuntimeError(f"{DB_ENV_VAR} is not set; is this running under flowkeeper?")

        if heartbeat_interval is None:
            raw = os.environ.get(HEARTBEAT_ENV_VAR)
            try:
                heartbeat_interval = float(raw) if raw else DEFAULT_HEARTBEAT_INTERVAL
            except ValueError:
                logger.warning(f"Ignoring invalid {HEARTBEAT_ENV_VAR}={raw!r}")
                heartbeat_interval = DEFAULT_HEARTBEAT_INTERVAL
        return cls(Path(db_path), heartbeat_interval)

    def update(
        self,
        status: WorkflowStatus | str | None = None,
        summary: str | None = None,
        last_error: str | None = None,
    ) -> None:
        """Persist workflow fields together with a fresh heartbeat."""
        self.store.write_workflow_state(
            status=status,
            summary=summary,
            heartbeat=utcnow(),
            last_error=last_error,
        )

    def heartbeat(self) -> None:
        self.store.write_workflow_state(heartbeat=utcnow())

    def start_heartbeat(self) -> None:
        """Start refreshing the heartbeat every ``heartbeat_interval`` seconds."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.heartbeat()
        self._thread = threading.Thread(
            target=self._heartbeat_loop, name="flowkeeper-heartbeat", daemon=True
        )
        self._thread.start()

    def stop_heartbeat(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.heartbeat_interval + 1)
            self._thread = None

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            try:
                self.heartbeat()
            except Exception as e:
                logger.warning(f"Failed to write heartbeat: {e}")

    def __enter__(self) -> "WorkflowStateWriter":
        self.start_heartbeat()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop_heartbeat()
        if exc is not None:
            self.store.write_workflow_state(
                status=WorkflowStatus.ERROR,
                last_error=f"{exc_type.__name__}: {exc}",
            )
