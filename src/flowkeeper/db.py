"""SQLite key/value state shared by a workflow and its supervisor."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from loguru import logger

from flowkeeper.models import PauseState, RecoveryPhase, WorkflowState, WorkflowStatus

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

# Written by the workflow program
KEY_STATUS = "supervisor.status"
KEY_SUMMARY = "supervisor.summary"
KEY_HEARTBEAT = "supervisor.heartbeat"
KEY_LAST_ERROR = "supervisor.last_error"

# Written by the supervisor and its control commands
KEY_PAUSED = "supervisor.paused"
KEY_PAUSED_AT = "supervisor.paused_at"
KEY_RESTART_COUNT = "supervisor.restart_count"
KEY_AUTOHEAL_COUNT = "supervisor.autoheal_count"
KEY_RECOVERY_PHASE = "supervisor.recovery_phase"
KEY_CHILD_PID = "supervisor.child_pid"

WORKFLOW_KEYS = (KEY_STATUS, KEY_SUMMARY, KEY_HEARTBEAT, KEY_LAST_ERROR)


class StateUnavailable(Exception):
    """The state database exists but could not be read (locked or corrupt)."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None when it is missing or invalid.

    Naive timestamps are taken to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def heartbeat_age(heartbeat: str | datetime | None, now: datetime | None = None) -> float | None:
    """Seconds since the heartbeat, or None if there is no usable heartbeat."""
    parsed = parse_timestamp(heartbeat)
    if parsed is None:
        return None
    return ((now or utcnow()) - parsed).total_seconds()


def is_heartbeat_stale(
    heartbeat: str | datetime | None,
    threshold_seconds: float,
    now: datetime | None = None,
) -> bool:
    """A heartbeat is stale when older than the threshold, missing or unparseable."""
    age = heartbeat_age(heartbeat, now)
    if age is None:
        return True
    return age > threshold_seconds


def format_age(seconds: float | None) -> str:
    """Human readable age like ``42s ago`` or ``3h ago``."""
    if seconds is None:
        return "never"
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def format_duration(seconds: float) -> str:
    """Human readable duration like ``5 minutes`` or ``1 day``."""
    seconds = max(0, int(seconds))
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


class StateStore:
    """Access to one worktree's ``state`` table.

    Readers tolerate the database not existing yet or being locked by a
    writer; those conditions mean "state unavailable", never an error.
    """

    def __init__(self, db_path: Path, timeout: float = 1.0):
        self.db_path = Path(db_path)
        self._timeout = timeout

    @contextmanager
    def _connect(self, readonly: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        if readonly:
            conn = sqlite3.connect(
                f"file:{self.db_path}?mode=ro", uri=True, timeout=self._timeout
            )
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=self._timeout)
            conn.executescript(SCHEMA_SQL)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @property
    def exists(self) -> bool:
        return self.db_path.exists()

    def read_values(self, keys: tuple[str, ...], strict: bool = False) -> dict[str, str] | None:
        """Read several keys at once, or None when the store is unavailable.

        A missing database always yields None. With ``strict``, a database that
        exists but cannot be read raises StateUnavailable instead.
        """
        if not self.db_path.exists():
            return None
        placeholders = ", ".join("?" for _ in keys)
        try:
            with self._connect(readonly=True) as conn:
                rows = conn.execute(
                    f"SELECT key, value FROM state WHERE key IN ({placeholders})", keys
                ).fetchall()
        except sqlite3.Error as e:
            if strict:
                raise StateUnavailable(f"State store {self.db_path} unavailable: {e}") from e
            logger.debug(f"State store {self.db_path} unavailable: {e}")
            return None
        return {key: value for key, value in rows if value is not None}

    def get_value(self, key: str) -> str | None:
        values = self.read_values((key,))
        return values.get(key) if values else None

    def set_values(self, values: dict[str, str | None]) -> None:
        """Write keys in one transaction; a None value deletes the key."""
        with self._connect() as conn:
            for key, value in values.items():
                if value is None:
                    conn.execute("DELETE FROM state WHERE key = ?", (key,))
                else:
                    conn.execute(
                        "INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)",
                        (key, value),
                    )

    def set_value(self, key: str, value: str | None) -> None:
        self.set_values({key: value})

    # Workflow state (read-only for the supervisor)

    def read_workflow_state(self, strict: bool = False) -> WorkflowState | None:
        """Last state the workflow persisted, or None when unavailable."""
        values = self.read_values(WORKFLOW_KEYS, strict=strict)
        if values is None:
            return None
        return WorkflowState(
            status=WorkflowStatus.parse(values.get(KEY_STATUS)),
            summary=values.get(KEY_SUMMARY),
            heartbeat=values.get(KEY_HEARTBEAT),
            last_error=values.get(KEY_LAST_ERROR),
        )

    def query_workflow_state(self, strict: bool = False) -> WorkflowState:
        """Like read_workflow_state but an unavailable store yields an empty state."""
        return self.read_workflow_state(strict=strict) or WorkflowState()

    def write_workflow_state(
        self,
        status: WorkflowStatus | str | None = None,
        summary: str | None = None,
        heartbeat: datetime | str | None = None,
        last_error: str | None = None,
    ) -> None:
        """Write workflow fields. Only for use by the workflow program itself."""
        values: dict[str, str | None] = {}
        if status is not None:
            values[KEY_STATUS] = status.value if isinstance(status, WorkflowStatus) else status
        if summary is not None:
            values[KEY_SUMMARY] = summary
        if heartbeat is not None:
            values[KEY_HEARTBEAT] = (
                heartbeat.isoformat() if isinstance(heartbeat, datetime) else heartbeat
            )
        if last_error is not None:
            values[KEY_LAST_ERROR] = last_error
        if values:
            self.set_values(values)

    # Pause state

    def get_pause_state(self, strict: bool = False) -> PauseState:
        values = self.read_values((KEY_PAUSED, KEY_PAUSED_AT), strict=strict) or {}
        return PauseState(
            paused=values.get(KEY_PAUSED) == "true",
            paused_at=parse_timestamp(values.get(KEY_PAUSED_AT)),
        )

    def is_paused(self, strict: bool = False) -> bool:
        return self.get_pause_state(strict=strict).paused

    def set_paused(self, at: datetime | None = None) -> PauseState:
        """Mark the workflow paused."""
        at = at or utcnow()
        self.set_values({KEY_PAUSED: "true", KEY_PAUSED_AT: at.isoformat()})
        return PauseState(paused=True, paused_at=at)

    def clear_pause(self) -> PauseState:
        """Clear both pause fields and reset the persisted restart counter."""
        previous = self.get_pause_state()
        self.set_values({
            KEY_PAUSED: "false",
            KEY_PAUSED_AT: None,
            KEY_RESTART_COUNT: "0",
        })
        return previous

    # Recovery bookkeeping

    def write_recovery(
        self,
        restart_attempts: int,
        autoheal_attempts: int,
        phase: RecoveryPhase,
        child_pid: int | None = None,
    ) -> None:
        self.set_values({
            KEY_RESTART_COUNT: str(restart_attempts),
            KEY_AUTOHEAL_COUNT: str(autoheal_attempts),
            KEY_RECOVERY_PHASE: phase.value,
            KEY_CHILD_PID: str(child_pid) if child_pid else None,
        })

    def read_recovery(self) -> dict:
        values = self.read_values(
            (KEY_RESTART_COUNT, KEY_AUTOHEAL_COUNT, KEY_RECOVERY_PHASE, KEY_CHILD_PID)
        ) or {}

        def as_int(key: str) -> int | None:
            try:
                return int(values[key])
            except (KeyError, ValueError):
                return None

        return {
            "restart_attempts": as_int(KEY_RESTART_COUNT) or 0,
            "autoheal_attempts": as_int(KEY_AUTOHEAL_COUNT) or 0,
            "recovery_phase": values.get(KEY_RECOVERY_PHASE),
            "child_pid": as_int(KEY_CHILD_PID),
        }
