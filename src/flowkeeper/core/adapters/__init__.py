"""Repair agents available for auto-heal."""

from __future__ import annotations

from flowkeeper.core.adapters.base import AgentRun, AutoHealAdapter, AutoHealResult
from flowkeeper.core.adapters.claude import ClaudeCodeAdapter
from flowkeeper.core.adapters.codex import CodexAdapter
from flowkeeper.core.adapters.opencode import OpenCodeAdapter
from flowkeeper.core.adapters.pi import PiAdapter
from flowkeeper.models import AutoHealEngine

ADAPTERS: dict[AutoHealEngine, type[AutoHealAdapter]] = {
    AutoHealEngine.CLAUDE: ClaudeCodeAdapter,
    AutoHealEngine.CODEX: CodexAdapter,
    AutoHealEngine.OPENCODE: OpenCodeAdapter,
    AutoHealEngine.PI: PiAdapter,
}


def get_adapter(engine: AutoHealEngine, timeout: float | None = None) -> AutoHealAdapter:
    """Create the adapter registered for an engine."""
    return ADAPTERS[engine](timeout=timeout)


__all__ = [
    "ADAPTERS",
    "AgentRun",
    "AutoHealAdapter",
    "AutoHealResult",
    "ClaudeCodeAdapter",
    "CodexAdapter",
    "OpenCodeAdapter",
    "PiAdapter",
    "get_adapter",
]
