"""OpenCode repair agent."""

from __future__ import annotations

from pathlib import Path

from flowkeeper.core.adapters.base import ExitCodeAdapter


class OpenCodeAdapter(ExitCodeAdapter):
    """Runs ``opencode -p <prompt> -q`` (``-q`` disables the spinner)."""

    name = "opencode"
    display_name = "OpenCode"
    prompt_file_name = "autoheal-prompt-opencode.txt"

    def build_command(self, prompt: str, program_path: Path) -> list[str]:
        return ["opencode", "-p", prompt, "-q"]
