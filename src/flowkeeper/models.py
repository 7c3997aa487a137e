"""Pydantic models for flowkeeper configuration and state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WorkflowStatus(str, Enum):
    """Status the workflow program reports about itself."""

    UNKNOWN = "unknown"
    RUNNING = "running"
    ERROR = "error"
    DONE = "done"

    @classmethod
    def parse(cls, value: str | None) -> "WorkflowStatus":
        """Map a raw stored value to a status, defaulting to UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class AutoHealEngine(str, Enum):
    """Repair agents that can patch a crashed workflow program."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"
    PI = "pi"


class RecoveryPhase(str, Enum):
    """Where the crash recovery state machine currently is."""

    RUNNING = "running"
    RECOVERING_AUTOHEAL = "recovering_autoheal"
    RECOVERING_BACKOFF = "recovering_backoff"
    STOPPED_TERMINAL = "stopped_terminal"
    PAUSED = "paused"


# Configuration


class WorkflowConfig(BaseModel):
    """The supervised workflow program."""

    script: str | None = None  # Program file, defaults to the worktree's program path
    db: str | None = None  # State database, defaults to the worktree's database path
    input: dict | None = None  # Passed to the program as --input <json>
    command: list[str] | None = None  # Interpreter prefix, defaults to the current python


class PathsConfig(BaseModel):
    """Runtime file locations."""

    logs_dir: str | None = None
    pid_file: str | None = None


class HealthConfig(BaseModel):
    """Hang detection and restart policy."""

    heartbeat_key: str = "supervisor.heartbeat"
    heartbeat_write_interval_seconds: int = 30
    hang_threshold_seconds: int = 300
    check_interval_seconds: float = 10.0
    restart_backoff_seconds: list[float] = Field(
        default_factory=lambda: [5, 30, 120, 600]
    )
    max_restart_attempts: int = 20

    @field_validator("restart_backoff_seconds")
    @classmethod
    def _validate_backoff(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("restart_backoff_seconds must not be empty")
        if any(delay < 0 for delay in value):
            raise ValueError("restart_backoff_seconds must not contain negative delays")
        return value

    @field_validator("hang_threshold_seconds", "max_restart_attempts")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value


class AutoHealConfig(BaseModel):
    """Automatic repair of a crashed workflow by a coding agent."""

    enabled: bool = True
    engine: AutoHealEngine = AutoHealEngine.CLAUDE
    max_attempts: int = 3
    timeout_seconds: float | None = None  # None: wait for the agent indefinitely


class UpdatesConfig(BaseModel):
    """Periodic status broadcast."""

    enabled: bool = False
    interval_seconds: int = 600


class TelegramConfig(BaseModel):
    """Telegram notification credentials."""

    bot_token: str = ""
    chat_id: int = 0
    message_thread_id: int | None = None

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class CompanionConfig(BaseModel):
    """Chat bridge process started next to the workflow."""

    enabled: bool = False
    command: list[str] = Field(default_factory=lambda: ["takopi"])


class WorktreeRef(BaseModel):
    """Identity of the worktree a config belongs to."""

    name: str
    branch: str


class SupervisorConfig(BaseModel):
    """Configuration of one worktree's supervisor."""

    version: int = 1
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    autoheal: AutoHealConfig = Field(default_factory=AutoHealConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    companion: CompanionConfig = Field(default_factory=CompanionConfig)
    worktree: WorktreeRef | None = None
    workdir: str | None = None  # Child working directory

    @property
    def script_path(self) -> Path:
        return Path(self.workflow.script or "")

    @property
    def db_path(self) -> Path:
        return Path(self.workflow.db or "")

    @property
    def logs_dir(self) -> Path:
        return Path(self.paths.logs_dir or "")

    @property
    def pid_path(self) -> Path:
        return Path(self.paths.pid_file or "")

    @property
    def state_dir(self) -> Path:
        """Directory holding the PID file and auto-heal prompt files."""
        return self.pid_path.parent

    @property
    def display_name(self) -> str:
        return self.worktree.name if self.worktree else "main"


# State


class WorkflowState(BaseModel):
    """State record the workflow program persists about itself."""

    status: WorkflowStatus = WorkflowStatus.UNKNOWN
    summary: str | None = None
    heartbeat: str | None = None
    last_error: str | None = None


class PauseState(BaseModel):
    """Persisted pause flag of a worktree."""

    paused: bool = False
    paused_at: datetime | None = None


class Worktree(BaseModel):
    """One git working copy of the repository."""

    path: str
    branch: str
    is_main: bool = False
    commit_hash: str = ""


class WorktreeStatus(BaseModel):
    """What an operator sees when asking about a worktree."""

    name: str
    supervisor_pid: int | None = None
    supervisor_running: bool = False
    status: str = "not started"
    summary: str | None = None
    heartbeat: str | None = None
    heartbeat_ok: bool = False
    heartbeat_age_seconds: float | None = None
    last_error: str | None = None
    paused: bool = False
    paused_at: datetime | None = None
    restart_attempts: int = 0
    autoheal_attempts: int = 0
    recovery_phase: str | None = None
    child_pid: int | None = None
