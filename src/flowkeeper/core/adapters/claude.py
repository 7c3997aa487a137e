"""Claude Code repair agent."""

from __future__ import annotations

from pathlib import Path

from flowkeeper.core.adapters.base import ExitCodeAdapter


class ClaudeCodeAdapter(ExitCodeAdapter):
    """Runs ``claude -p <prompt> <program>``.

    ``ANTHROPIC_API_KEY`` is blanked so the CLI uses subscription auth
    instead of billing the key that may be set for the workflow.
    """

    name = "claude"
    display_name = "Claude Code"
    prompt_file_name = "autoheal-prompt.txt"

    def build_command(self, prompt: str, program_path: Path) -> list[str]:
        return ["claude", "-p", prompt, str(program_path)]

    def build_env(self) -> dict[str, str]:
        env = super().build_env()
        env["ANTHROPIC_API_KEY"] = ""
        return env
