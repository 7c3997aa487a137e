"""PID files: at most one live supervisor per worktree."""

from __future__ import annotations

from pathlib import Path

import psutil
from loguru import logger

from flowkeeper.models import SupervisorConfig


def check_pid(pid: int) -> bool:
    """Check if a process with given PID is running."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


class PidRegistry:
    """Reads and writes supervisor PID files."""

    def write(self, path: Path, pid: int) -> None:
        """Write a PID to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(pid))

    def read(self, path: Path) -> int | None:
        """Get the PID recorded in a file if that process is alive.

        A stale file (recorded process gone) is deleted.
        """
        if not path.exists():
            return None

        try:
            pid = int(path.read_text().strip())
        except (ValueError, FileNotFoundError):
            return None

        if check_pid(pid):
            return pid

        logger.debug(f"Removing stale PID file {path} (PID {pid} is not running)")
        self.delete(path)
        return None

    def delete(self, path: Path) -> None:
        """Remove a PID file."""
        path.unlink(missing_ok=True)

    @staticmethod
    def path_for(config: SupervisorConfig) -> Path:
        return config.pid_path
