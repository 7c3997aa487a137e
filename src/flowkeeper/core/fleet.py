"""Operations across every configured worktree of a repository.

Each worktree gets its own supervisor process; the fleet only finds them,
signals them and collects per-worktree outcomes. One worktree failing never
stops the others from being handled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from flowkeeper.config import load_config
from flowkeeper.core.control import (
    SupervisorNotRunning,
    WorkflowNotPaused,
    pause_workflow,
    restart_supervisor,
    resume_workflow,
    start_detached,
    stop_supervisor,
    workflow_status,
)
from flowkeeper.models import SupervisorConfig, Worktree
from flowkeeper.worktree import WorktreePaths, list_worktrees, repo_root


@dataclass
class WorktreeOutcome:
    """Result of one fleet operation on one worktree."""

    name: str
    ok: bool
    message: str = ""
    skipped: bool = False
    data: Any = None


@dataclass
class FleetReport:
    """Per-worktree outcomes of a fleet operation."""

    action: str
    outcomes: list[WorktreeOutcome] = field(default_factory=list)

    def add(self, outcome: WorktreeOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def failed(self) -> list[WorktreeOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> list[WorktreeOutcome]:
        return [o for o in self.outcomes if o.ok and not o.skipped]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class WorktreeFleetCoordinator:
    """Runs control commands against all worktrees that have a config."""

    def __init__(
        self,
        cwd: Path | None = None,
        lister: Callable[[Path | None], list[Worktree]] = list_worktrees,
        loader: Callable[..., SupervisorConfig] = load_config,
    ):
        self.cwd = cwd
        self._lister = lister
        self._loader = loader

    def configured_worktrees(
        self, worktrees: list[Worktree] | None = None
    ) -> list[tuple[Worktree, Path]]:
        """Worktrees with an existing config file, and that file's path."""
        if worktrees is None:
            worktrees = self._lister(self.cwd)
        root = repo_root(worktrees)
        if root is None:
            return []

        configured = []
        for worktree in worktrees:
            config_path = WorktreePaths.for_worktree(worktree, root).config
            if config_path.exists():
                configured.append((worktree, config_path))
            else:
                logger.debug(f"Skipping worktree '{worktree.branch}' (no config at {config_path})")
        return configured

    def _for_each(
        self,
        action: str,
        operation: Callable[[SupervisorConfig, Worktree], WorktreeOutcome],
    ) -> FleetReport:
        report = FleetReport(action)
        worktrees = self._lister(self.cwd)
        root = repo_root(worktrees)
        targets = self.configured_worktrees(worktrees)

        if not targets:
            logger.warning("No worktrees with a flowkeeper config found")

        for worktree, config_path in targets:
            try:
                config = self._loader(config_path, root, worktree)
                outcome = operation(config, worktree)
            except SupervisorNotRunning as e:
                outcome = WorktreeOutcome(worktree.branch, True, str(e), skipped=True)
            except Exception as e:
                logger.error(f"Failed to {action} worktree '{worktree.branch}': {e}")
                outcome = WorktreeOutcome(worktree.branch, False, str(e))
            report.add(outcome)

        return report

    def start_all(self, dry_run: bool = False, verbose: bool = False) -> FleetReport:
        def start(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            pid = start_detached(config, worktree.branch, dry_run=dry_run, verbose=verbose)
            return WorktreeOutcome(worktree.branch, True, f"started (PID: {pid})", data=pid)

        return self._for_each("start", start)

    def stop_all(self, keep_companion: bool = False) -> FleetReport:
        def stop(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            pid = stop_supervisor(config, keep_companion=keep_companion)
            return WorktreeOutcome(worktree.branch, True, f"stopped (PID: {pid})", data=pid)

        return self._for_each("stop", stop)

    def restart_all(self) -> FleetReport:
        def restart(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            pid = restart_supervisor(config)
            return WorktreeOutcome(worktree.branch, True, f"restart requested (PID: {pid})", data=pid)

        return self._for_each("restart", restart)

    def pause_all(self) -> FleetReport:
        def pause(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            state = pause_workflow(config)
            return WorktreeOutcome(worktree.branch, True, "paused", data=state)

        return self._for_each("pause", pause)

    def resume_all(self) -> FleetReport:
        def resume(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            try:
                duration = resume_workflow(config)
            except WorkflowNotPaused:
                return WorktreeOutcome(worktree.branch, True, "not paused", skipped=True)
            message = f"resumed (paused for {duration})" if duration else "resumed"
            return WorktreeOutcome(worktree.branch, True, message, data=duration)

        return self._for_each("resume", resume)

    def status_all(self) -> FleetReport:
        def status(config: SupervisorConfig, worktree: Worktree) -> WorktreeOutcome:
            result = workflow_status(config)
            result.name = worktree.branch
            return WorktreeOutcome(worktree.branch, True, result.status, data=result)

        return self._for_each("status", status)
