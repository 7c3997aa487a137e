"""Codex repair agent.

``codex exec --json`` prints one JSON event per line. The turn succeeded when
a ``turn.completed`` event arrives and no ``turn.failed`` event does.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from flowkeeper.core.adapters.base import AgentRun, AutoHealAdapter, AutoHealResult


def parse_events(output: str) -> list[dict]:
    """Parse newline-delimited JSON, skipping lines that are not JSON objects."""
    events = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse JSONL line: {line[:100]}")
            continue
        if isinstance(event, dict):
            events.append(event)
        else:
            logger.warning(f"Ignoring non-object JSONL line: {line[:100]}")
    return events


def _failure_message(event: dict) -> str:
    for holder in (event.get("turn"), event):
        if isinstance(holder, dict):
            error = holder.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
    return "Unknown error"


class CodexAdapter(AutoHealAdapter):
    name = "codex"
    prompt_file_name = "autoheal-prompt-codex.txt"

    def build_command(self, prompt: str, program_path: Path) -> list[str]:
        return ["codex", "exec", "--json", prompt]

    def evaluate(self, run: AgentRun) -> AutoHealResult:
        events = parse_events(run.stdout)
        logger.info(f"Parsed {len(events)} Codex events")

        failed = next((e for e in events if e.get("type") == "turn.failed"), None)
        if failed is not None:
            return AutoHealResult(
                success=False,
                error=f"Codex turn failed: {_failure_message(failed)}",
                agent_output=run.stdout,
            )

        if not any(e.get("type") == "turn.completed" for e in events):
            return AutoHealResult(
                success=False,
                error="Codex did not complete successfully (no turn.completed event)",
                agent_output=run.stdout,
            )

        file_changes = [
            e for e in events
            if isinstance(e.get("item"), dict)
            and e["item"].get("type") == "file_change"
            and e["item"].get("status") == "completed"
        ]
        logger.info(f"Codex made {len(file_changes)} file changes")

        return AutoHealResult(success=True, agent_output=run.stdout)
