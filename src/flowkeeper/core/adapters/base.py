"""Base class for auto-heal repair agents."""

from __future__ import annotations

import asyncio
import os
import signal
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
from loguru import logger

if TYPE_CHECKING:
    from flowkeeper.core.autoheal import AutoHealContext

# How much agent output ends up in the log
LOG_EXCERPT_CHARS = 500


class AutoHealResult:
    """Result of an auto-heal attempt."""

    def __init__(
        self,
        success: bool,
        patched_program: str | None = None,
        error: str | None = None,
        agent_output: str | None = None,
    ):
        self.success = success
        self.patched_program = patched_program
        self.error = error
        self.agent_output = agent_output

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        status = "success" if self.success else "failure"
        return f"AutoHealResult({status}, error={self.error!r})"


class AgentRun:
    """Captured output of one repair agent process."""

    def __init__(self, returncode: int | None, stdout: str, stderr: str):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def combined_output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout


class AgentTimeout(Exception):
    """The repair agent did not finish in time."""

    pass


class AutoHealAdapter(ABC):
    """A coding agent that repairs a crashed workflow program.

    Subclasses define how the agent is invoked (``build_command``) and how its
    output is judged (``evaluate``). The shared ``invoke`` writes the prompt to
    a debug file, runs the agent and, when the agent reports success, re-reads
    the program from disk: success is only claimed if the file is readable and
    differs from what it was before the agent ran.
    """

    name: str = ""
    prompt_file_name: str = "autoheal-prompt.txt"

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    @abstractmethod
    def build_command(self, prompt: str, program_path: Path) -> list[str]:
        """Command line that runs the agent non-interactively."""

    def build_env(self) -> dict[str, str]:
        return os.environ.copy()

    @abstractmethod
    def evaluate(self, run: AgentRun) -> AutoHealResult:
        """Decide from the agent's output whether it claims to have fixed the program."""

    async def invoke(
        self,
        prompt: str,
        program_path: Path,
        context: AutoHealContext,
    ) -> AutoHealResult:
        logger.info(f"Invoking {self.name} for auto-heal...")

        try:
            self.write_prompt_file(prompt, context.state_dir)
        except OSError as e:
            logger.warning(f"Could not write auto-heal prompt file: {e}")

        try:
            run = await self.run_agent(
                self.build_command(prompt, program_path),
                cwd=context.workdir,
            )
        except AgentTimeout:
            return AutoHealResult(
                success=False,
                error=f"{self.name} did not finish within {self.timeout}s",
            )
        except OSError as e:
            return AutoHealResult(success=False, error=f"Auto-heal invocation failed: {e}")

        logger.info(f"{self.name} exited with code {run.returncode}")
        if run.stdout:
            logger.debug(f"{self.name} stdout: {run.stdout[:LOG_EXCERPT_CHARS]}")
        if run.stderr:
            logger.warning(f"{self.name} stderr: {run.stderr[:LOG_EXCERPT_CHARS]}")

        result = self.evaluate(run)
        if not result.success:
            return result

        return self.verify_patch(result, program_path, context.program_source)

    def write_prompt_file(self, prompt: str, state_dir: Path) -> Path:
        """Persist the prompt for debugging."""
        state_dir.mkdir(parents=True, exist_ok=True)
        path = state_dir / self.prompt_file_name
        path.write_text(prompt)
        return path

    async def run_agent(self, cmd: list[str], cwd: Path | None = None) -> AgentRun:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=self.build_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            await self._kill_agent(process)
            raise AgentTimeout()
        except BaseException:
            # Cancelled by a restart, reload or stop: the agent must not keep editing
            await self._kill_agent(process)
            raise

        return AgentRun(
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def _kill_agent(self, process: asyncio.subprocess.Process) -> None:
        """Kill the agent and anything it spawned, then reap it."""
        if process.returncode is not None:
            return

        logger.warning(f"Killing {self.name} (PID {process.pid})")
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.send_signal(signal.SIGKILL)
            except psutil.Error:
                pass

        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    def verify_patch(
        self,
        result: AutoHealResult,
        program_path: Path,
        original_source: str | None,
    ) -> AutoHealResult:
        """Re-read the program and only keep success if it actually changed."""
        try:
            patched = program_path.read_text()
        except OSError as e:
            return AutoHealResult(
                success=False,
                error=f"Could not read patched program {program_path}: {e}",
                agent_output=result.agent_output,
            )

        if original_source is not None and patched == original_source:
            return AutoHealResult(
                success=False,
                error=f"{self.name} reported success but {program_path} was not modified",
                agent_output=result.agent_output,
            )

        return AutoHealResult(
            success=True,
            patched_program=patched,
            agent_output=result.agent_output,
        )


class ExitCodeAdapter(AutoHealAdapter):
    """Agents whose exit code alone tells success from failure."""

    display_name: str = ""

    def evaluate(self, run: AgentRun) -> AutoHealResult:
        label = self.display_name or self.name
        if run.returncode != 0:
            return AutoHealResult(
                success=False,
                error=f"{label} failed with exit code {run.returncode}",
                agent_output=run.combined_output,
            )
        return AutoHealResult(success=True, agent_output=run.stdout)
