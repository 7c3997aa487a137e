"""Pi repair agent."""

from __future__ import annotations

from pathlib import Path

from flowkeeper.core.adapters.base import ExitCodeAdapter


class PiAdapter(ExitCodeAdapter):
    name = "pi"
    display_name = "Pi"
    prompt_file_name = "autoheal-prompt-pi.txt"

    def build_command(self, prompt: str, program_path: Path) -> list[str]:
        return ["pi", "-p", prompt]
