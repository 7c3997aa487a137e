"""Auto-heal: let a coding agent repair a crashed workflow program."""

from __future__ import annotations

from collections import deque
from pathlib import Path

from loguru import logger

from flowkeeper.core.adapters import AutoHealAdapter, AutoHealResult
from flowkeeper.core.process import ProcessExit
from flowkeeper.db import StateStore
from flowkeeper.models import SupervisorConfig, WorkflowState

SUPERVISOR_LOG_NAME = "supervisor.log"
LOG_TAIL_LINES = 100


class AutoHealContext:
    """Everything the repair agent gets to see about a crash."""

    def __init__(
        self,
        exit_code: int | None,
        signal: int | None,
        restart_attempts: int,
        program_path: Path,
        program_source: str | None,
        db_path: Path,
        state: WorkflowState,
        recent_logs: str,
        state_dir: Path,
        workdir: Path | None = None,
    ):
        self.exit_code = exit_code
        self.signal = signal
        self.restart_attempts = restart_attempts
        self.program_path = program_path
        self.program_source = program_source
        self.db_path = db_path
        self.state = state
        self.recent_logs = recent_logs
        self.state_dir = state_dir
        self.workdir = workdir


def read_log_tail(path: Path, lines: int = LOG_TAIL_LINES) -> str:
    """Read the last lines of a log file."""
    try:
        with open(path, errors="replace") as f:
            return "".join(deque(f, maxlen=lines))
    except OSError as e:
        return f"Failed to read logs: {e}"


def capture_context(
    config: SupervisorConfig,
    exit: ProcessExit,
    restart_attempts: int,
    store: StateStore | None = None,
) -> AutoHealContext:
    """Collect crash information, workflow state, log tail and program source."""
    logger.info("Capturing auto-heal context...")

    program_path = config.script_path
    try:
        program_source = program_path.read_text()
    except OSError as e:
        logger.warning(f"Failed to read workflow program {program_path}: {e}")
        program_source = None

    store = store or StateStore(config.db_path)

    return AutoHealContext(
        exit_code=exit.exit_code,
        signal=exit.signal,
        restart_attempts=restart_attempts,
        program_path=program_path,
        program_source=program_source,
        db_path=config.db_path,
        state=store.query_workflow_state(),
        recent_logs=read_log_tail(config.logs_dir / SUPERVISOR_LOG_NAME),
        state_dir=config.state_dir,
        workdir=Path(config.workdir) if config.workdir else None,
    )


def build_repair_prompt(context: AutoHealContext) -> str:
    """Build the prompt handed to the repair agent."""
    state = context.state
    source = context.program_source
    if source is None:
        source = f"Failed to read workflow program {context.program_path}"

    return f"""# Auto-heal: Workflow Crash Recovery

The supervised workflow process crashed. Your job is to diagnose and fix the issue.

## Crash Information
- Exit code: {context.exit_code if context.exit_code is not None else 'null'}
- Signal: {context.signal if context.signal is not None else 'null'}
- Restart attempts: {context.restart_attempts}

## Database State ({context.db_path})
- Status: {state.status.value}
- Summary: {state.summary or 'N/A'}
- Last error: {state.last_error or 'N/A'}
- Heartbeat: {state.heartbeat or 'N/A'}

## Recent Logs (last {LOG_TAIL_LINES} lines)
```
{context.recent_logs}
```

## Current Workflow Program ({context.program_path})
```python
{source}
```

## Your Task
1. Analyze the crash: look at logs, exit code, DB state, and workflow code
2. Identify the root cause (syntax error, runtime error, missing import, infinite loop, etc.)
3. Patch the workflow program to fix the issue
   - Add error handling, timeouts, retries as needed
   - Fix syntax errors
   - Add graceful fallbacks
4. Ensure the workflow remains **resumable** (keep persisting progress to the state database)
5. Keep the plan simple and observable

## Constraints
- Only edit {context.program_path}
- Do NOT change the supervisor state key contract (supervisor.heartbeat, supervisor.status, supervisor.summary, supervisor.last_error)
- Do NOT break resumability
- Prefer robust, restart-friendly designs

## Output
Edit the workflow program to fix the crash. The supervisor will automatically restart it after you're done.
"""


async def attempt_autoheal(
    config: SupervisorConfig,
    adapter: AutoHealAdapter,
    exit: ProcessExit,
    restart_attempts: int,
    store: StateStore | None = None,
) -> AutoHealResult:
    """Run one auto-heal attempt. Never raises: every failure becomes a result."""
    logger.info("=== Starting Auto-Heal Attempt ===")
    logger.info(f"Using auto-heal adapter: {adapter.name}")

    try:
        context = capture_context(config, exit, restart_attempts, store)
        prompt = build_repair_prompt(context)
        logger.debug(f"Repair prompt length: {len(prompt)} chars")
        result = await adapter.invoke(prompt, context.program_path, context)
    except Exception as e:
        logger.exception("Auto-heal attempt raised")
        result = AutoHealResult(success=False, error=f"Auto-heal invocation failed: {e}")

    if result.success:
        logger.info("Auto-heal succeeded, workflow program patched")
        logger.debug(f"Patched program length: {len(result.patched_program or '')} chars")
    else:
        logger.error(f"Auto-heal failed: {result.error}")
        if result.agent_output:
            logger.error(f"Agent output: {result.agent_output[:1000]}")

    return result
