"""Spawning and controlling the supervised workflow process."""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Any

import psutil
from loguru import logger

from flowkeeper.config import DB_ENV_VAR, HEARTBEAT_ENV_VAR
from flowkeeper.models import SupervisorConfig

WORKFLOW_LOG_NAME = "workflow.log"
COMPANION_LOG_NAME = "companion.log"


class ProcessError(Exception):
    """A child process could not be started or signalled."""

    pass


@dataclass(frozen=True)
class ProcessExit:
    """How a child process ended."""

    returncode: int | None
    intentional: bool = False

    @property
    def exit_code(self) -> int | None:
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def signal(self) -> int | None:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return f"killed by signal {name}"
        return f"exited with code {self.exit_code}"


class ProcessHandle:
    """Handle to a running child process."""

    def __init__(
        self,
        name: str,
        process: asyncio.subprocess.Process,
        log_file: IO[Any] | None = None,
    ):
        self.name = name
        self.process = process
        self.log_file = log_file
        self.started_at = datetime.now()
        self.intentional = False
        self._exit: ProcessExit | None = None

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        """Get the return code if process has exited."""
        return self.process.returncode

    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.process.returncode is None

    def mark_intentional(self) -> None:
        """Flag the next exit as requested by the supervisor, not a crash."""
        self.intentional = True

    def terminate(self) -> None:
        """Send SIGTERM to the process and its descendants."""
        self._signal_tree(signal.SIGTERM)

    def kill(self) -> None:
        """Send SIGKILL to the process and its descendants."""
        self._signal_tree(signal.SIGKILL)

    def _signal_tree(self, sig: signal.Signals) -> None:
        if not self.is_running():
            return

        try:
            children = psutil.Process(self.pid).children(recursive=True)
        except psutil.Error:
            children = []

        for child in children:
            try:
                child.send_signal(sig)
            except psutil.Error:
                pass

        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            # Exited between the check and the signal
            return
        except OSError as e:
            raise ProcessError(f"Failed to send {sig.name} to {self.name} (PID {self.pid}): {e}") from e

    async def wait(self) -> ProcessExit:
        """Wait for the process to exit."""
        returncode = await self.process.wait()
        if self._exit is None:
            self._exit = ProcessExit(returncode=returncode, intentional=self.intentional)
            self.close_files()
        return self._exit

    def close_files(self) -> None:
        """Close log file handles."""
        if self.log_file and not self.log_file.closed:
            self.log_file.close()


def build_command(config: SupervisorConfig) -> list[str]:
    """Command line that runs the workflow program."""
    cmd = list(config.workflow.command or [sys.executable])
    cmd.append(str(config.script_path))
    if config.workflow.input:
        cmd.extend(["--input", json.dumps(config.workflow.input)])
    return cmd


def build_env(config: SupervisorConfig) -> dict[str, str]:
    """Environment of the workflow: ours plus where and how often to report state."""
    env = os.environ.copy()
    env[DB_ENV_VAR] = str(config.db_path)
    env[HEARTBEAT_ENV_VAR] = str(config.health.heartbeat_write_interval_seconds)
    return env


def _open_log(path: Path, title: str, cmd: list[str]) -> IO[Any]:
    path.parent.mkdir(parents=True, exist_ok=True)
    log_file = open(path, "a")

    # Log header
    timestamp = datetime.now().isoformat()
    log_file.write(f"\n{'='*60}\n")
    log_file.write(f"[{timestamp}] Starting {title}\n")
    log_file.write(f"Command: {' '.join(cmd)}\n")
    log_file.write(f"{'='*60}\n\n")
    log_file.flush()
    return log_file


class ProcessLauncher:
    """Starts the workflow and companion processes of one worktree."""

    async def launch(self, config: SupervisorConfig) -> ProcessHandle:
        """Start the workflow program.

        The child runs in its own session so signals aimed at the supervisor
        never reach it, and writes its output to the worktree's workflow log.
        """
        cmd = build_command(config)
        cwd = Path(config.workdir) if config.workdir else Path.cwd()
        if not cwd.exists():
            raise ProcessError(f"Working directory does not exist: {cwd}")

        env = build_env(config)

        log_file = _open_log(config.logs_dir / WORKFLOW_LOG_NAME, "workflow", cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                start_new_session=True,
            )
        except OSError as e:
            log_file.close()
            raise ProcessError(f"Failed to start workflow: {e}") from e

        logger.info(f"Workflow started with PID {process.pid}")
        return ProcessHandle("workflow", process, log_file)

    async def launch_companion(self, config: SupervisorConfig) -> ProcessHandle:
        """Start the companion chat bridge."""
        cmd = list(config.companion.command)
        cwd = Path(config.workdir) if config.workdir else Path.cwd()

        log_file = _open_log(config.logs_dir / COMPANION_LOG_NAME, "companion", cmd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                start_new_session=True,
            )
        except OSError as e:
            log_file.close()
            raise ProcessError(f"Failed to start companion '{cmd[0]}': {e}") from e

        logger.info(f"Companion started with PID {process.pid}")
        return ProcessHandle("companion", process, log_file)


async def terminate_and_wait(handle: ProcessHandle, grace_period: float = 10.0) -> ProcessExit:
    """Stop a process gracefully, killing it if it outlives the grace period."""
    handle.mark_intentional()
    handle.terminate()
    try:
        return await asyncio.wait_for(handle.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning(f"{handle.name} (PID {handle.pid}) did not stop gracefully, killing")
        handle.kill()
        return await handle.wait()
