"""Tests for auto-heal context capture, the repair prompt and the agent adapters."""

import asyncio
import json
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from flowkeeper.core.adapters import (
    ADAPTERS,
    ClaudeCodeAdapter,
    CodexAdapter,
    OpenCodeAdapter,
    PiAdapter,
    get_adapter,
)
from flowkeeper.core.adapters.base import AgentRun, AgentTimeout, ExitCodeAdapter
from flowkeeper.core.adapters.codex import parse_events
from flowkeeper.core.autoheal import (
    SUPERVISOR_LOG_NAME,
    attempt_autoheal,
    build_repair_prompt,
    capture_context,
    read_log_tail,
)
from flowkeeper.core.process import ProcessExit
from flowkeeper.models import AutoHealEngine, WorkflowStatus


def jsonl(*events) -> str:
    return "\n".join(json.dumps(e) for e in events) + "\n"


class SlowAgent(ExitCodeAdapter):
    """An agent that outlives any reasonable test."""

    name = "slow"

    def build_command(self, prompt, program_path):
        return [sys.executable, "-c", "import time; time.sleep(30)"]


def fake_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


class TestContext:
    def test_capture_context(self, config, program, store):
        store.write_workflow_state(status="error", summary="Step 3", last_error="KeyError: 'x'")
        config.logs_dir.mkdir(parents=True)
        (config.logs_dir / SUPERVISOR_LOG_NAME).write_text("line 1\nline 2\n")

        context = capture_context(config, ProcessExit(returncode=2), restart_attempts=3, store=store)

        assert context.exit_code == 2
        assert context.signal is None
        assert context.restart_attempts == 3
        assert context.program_source == program.read_text()
        assert context.state.status == WorkflowStatus.ERROR
        assert context.recent_logs == "line 1\nline 2\n"
        assert context.state_dir == config.state_dir

    def test_capture_context_signal_and_missing_program(self, config, store):
        context = capture_context(config, ProcessExit(returncode=-9), restart_attempts=0, store=store)

        assert context.exit_code is None
        assert context.signal == 9
        assert context.program_source is None
        assert context.recent_logs.startswith("Failed to read logs")

    def test_read_log_tail_limits_lines(self, tmp_path):
        log = tmp_path / "supervisor.log"
        log.write_text("".join(f"line {i}\n" for i in range(250)))

        tail = read_log_tail(log, lines=100)

        assert tail.splitlines()[0] == "line 150"
        assert len(tail.splitlines()) == 100

    def test_prompt_contents(self, config, program, store):
        store.write_workflow_state(status="error", last_error="ZeroDivisionError")
        context = capture_context(config, ProcessExit(returncode=1), restart_attempts=2, store=store)

        prompt = build_repair_prompt(context)

        assert "- Exit code: 1" in prompt
        assert "- Signal: null" in prompt
        assert "- Restart attempts: 2" in prompt
        assert "- Last error: ZeroDivisionError" in prompt
        assert program.read_text() in prompt
        assert f"Only edit {config.script_path}" in prompt
        assert "supervisor.heartbeat" in prompt


class TestCodexEvents:
    def test_parse_events_skips_garbage(self):
        output = '{"type": "thread.started"}\nnot json\n[1, 2]\n\n{"type": "turn.completed"}\n'
        assert [e["type"] for e in parse_events(output)] == ["thread.started", "turn.completed"]

    def test_turn_failed(self):
        run = AgentRun(0, jsonl({"type": "turn.failed", "error": {"message": "X"}}), "")

        result = CodexAdapter().evaluate(run)

        assert result.success is False
        assert "X" in result.error

    def test_turn_failed_nested_error(self):
        run = AgentRun(0, jsonl({"type": "turn.failed", "turn": {"error": {"message": "quota"}}}), "")
        assert CodexAdapter().evaluate(run).error == "Codex turn failed: quota"

    def test_turn_failed_without_message(self):
        run = AgentRun(0, jsonl({"type": "turn.failed"}), "")
        assert CodexAdapter().evaluate(run).error == "Codex turn failed: Unknown error"

    def test_failure_wins_over_completion(self):
        run = AgentRun(0, jsonl(
            {"type": "turn.completed"},
            {"type": "turn.failed", "error": {"message": "late"}},
        ), "")
        assert CodexAdapter().evaluate(run).success is False

    def test_no_completion(self):
        run = AgentRun(0, jsonl({"type": "thread.started"}), "")
        result = CodexAdapter().evaluate(run)
        assert result.success is False
        assert "no turn.completed" in result.error

    def test_completed(self):
        run = AgentRun(0, jsonl(
            {"type": "item.completed", "item": {"type": "file_change", "status": "completed"}},
            {"type": "turn.completed"},
        ), "")
        assert CodexAdapter().evaluate(run).success is True


class TestExitCodeAdapters:
    def test_commands(self, tmp_path):
        program = tmp_path / "workflow.py"
        assert ClaudeCodeAdapter().build_command("fix", program) == ["claude", "-p", "fix", str(program)]
        assert CodexAdapter().build_command("fix", program) == ["codex", "exec", "--json", "fix"]
        assert OpenCodeAdapter().build_command("fix", program) == ["opencode", "-p", "fix", "-q"]
        assert PiAdapter().build_command("fix", program) == ["pi", "-p", "fix"]

    def test_claude_blanks_api_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")
        assert ClaudeCodeAdapter().build_env()["ANTHROPIC_API_KEY"] == ""

    def test_nonzero_exit_is_failure(self):
        result = OpenCodeAdapter().evaluate(AgentRun(3, "partial", "oops"))
        assert result.success is False
        assert result.error == "OpenCode failed with exit code 3"
        assert result.agent_output == "partial\noops"

    def test_zero_exit_is_success(self):
        assert PiAdapter().evaluate(AgentRun(0, "done", "")).success is True

    def test_registry_covers_every_engine(self):
        assert set(ADAPTERS) == set(AutoHealEngine)
        adapter = get_adapter(AutoHealEngine.CODEX, timeout=60)
        assert isinstance(adapter, CodexAdapter)
        assert adapter.timeout == 60


class TestInvoke:
    """The shared invoke path with the agent subprocess mocked out."""

    @pytest.mark.asyncio
    async def test_success_requires_modified_program(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)

        original = program.read_text()

        def agent_edits_program(*args, **kwargs):
            program.write_text(original + "# fixed\n")
            return fake_process(0, b"patched")

        with patch(
            "flowkeeper.core.adapters.base.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=agent_edits_program),
        ):
            result = await ClaudeCodeAdapter().invoke("prompt", program, context)

        assert result.success is True
        assert result.patched_program.endswith("# fixed\n")
        assert (config.state_dir / "autoheal-prompt.txt").read_text() == "prompt"

    @pytest.mark.asyncio
    async def test_unchanged_program_is_failure(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)

        with patch(
            "flowkeeper.core.adapters.base.asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(0, b"all good")),
        ):
            result = await PiAdapter().invoke("prompt", program, context)

        assert result.success is False
        assert "was not modified" in result.error

    @pytest.mark.asyncio
    async def test_codex_turn_failed(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)
        output = jsonl({"type": "turn.failed", "error": {"message": "X"}}).encode()

        with patch(
            "flowkeeper.core.adapters.base.asyncio.create_subprocess_exec",
            AsyncMock(return_value=fake_process(0, output)),
        ):
            result = await CodexAdapter().invoke("prompt", program, context)

        assert result.success is False
        assert "X" in result.error
        assert (config.state_dir / "autoheal-prompt-codex.txt").exists()

    @pytest.mark.asyncio
    async def test_agent_not_installed(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)

        with patch(
            "flowkeeper.core.adapters.base.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("claude")),
        ):
            result = await ClaudeCodeAdapter().invoke("prompt", program, context)

        assert result.success is False
        assert "invocation failed" in result.error

    @pytest.mark.asyncio
    async def test_agent_timeout(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)
        adapter = ClaudeCodeAdapter(timeout=5)

        with patch.object(adapter, "run_agent", AsyncMock(side_effect=AgentTimeout())):
            result = await adapter.invoke("prompt", program, context)

        assert result.success is False
        assert "did not finish within 5" in result.error

    @pytest.mark.asyncio
    async def test_run_agent_kills_on_timeout(self):
        process = fake_process(returncode=None)
        process.pid = 99999999

        async def never_finishes():
            await asyncio.sleep(10)

        process.communicate = never_finishes
        process.kill = MagicMock()

        with patch(
            "flowkeeper.core.adapters.base.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(AgentTimeout):
                await ClaudeCodeAdapter(timeout=0.05).run_agent(["claude"])

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_invoke_kills_agent(self, config, program, store):
        context = capture_context(config, ProcessExit(returncode=1), 0, store)
        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def spawn(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            spawned.append(process)
            return process

        with patch("flowkeeper.core.adapters.base.asyncio.create_subprocess_exec", new=spawn):
            task = asyncio.create_task(SlowAgent().invoke("prompt", program, context))
            for _ in range(500):
                if spawned:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(spawned) == 1
        assert spawned[0].returncode is not None


class TestAttemptAutoheal:
    @pytest.mark.asyncio
    async def test_never_raises(self, config, program, store):
        adapter = ClaudeCodeAdapter()

        with patch.object(adapter, "invoke", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await attempt_autoheal(config, adapter, ProcessExit(returncode=1), 0, store)

        assert result.success is False
        assert "boom" in result.error
