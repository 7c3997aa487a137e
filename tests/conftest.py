"""Shared fixtures for flowkeeper tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from flowkeeper.config import resolve_paths
from flowkeeper.db import StateStore
from flowkeeper.models import SupervisorConfig

PROGRAM_SOURCE = """import time

while True:
    time.sleep(1)
"""


@pytest.fixture
def config(tmp_path: Path) -> SupervisorConfig:
    """Config for a main worktree rooted at tmp_path."""
    cfg = SupervisorConfig()
    cfg.autoheal.enabled = False
    return resolve_paths(cfg, tmp_path)


@pytest.fixture
def program(config: SupervisorConfig) -> Path:
    path = config.script_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(PROGRAM_SOURCE)
    return path


@pytest.fixture
def store(config: SupervisorConfig) -> StateStore:
    return StateStore(config.db_path)
