"""Configuration loading and management for flowkeeper."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

import yaml
from loguru import logger

from flowkeeper.models import SupervisorConfig, Worktree, WorktreeRef
from flowkeeper.worktree import (
    WorktreePaths,
    current_worktree,
    find_worktree,
    list_worktrees,
    repo_root as find_repo_root,
    safe_branch_name,
)

# Environment variable the child reads to find its state database
DB_ENV_VAR = "FLOWKEEPER_DB"
# Seconds between heartbeats the child should write
HEARTBEAT_ENV_VAR = "FLOWKEEPER_HEARTBEAT_INTERVAL"


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def _resolve(value: str | None, default: Path, base: Path) -> str:
    """Resolve a configured path against the repository root."""
    if not value:
        return str(default)
    path = Path(os.path.expandvars(os.path.expanduser(value)))
    if not path.is_absolute():
        path = base / path
    return str(path)


def resolve_paths(
    config: SupervisorConfig,
    repo_root: Path,
    worktree: Worktree | None = None,
) -> SupervisorConfig:
    """Fill unset paths with the worktree defaults and make every path absolute."""
    defaults = WorktreePaths.for_worktree(worktree, repo_root)

    config.workflow.script = _resolve(config.workflow.script, defaults.program, repo_root)
    config.workflow.db = _resolve(config.workflow.db, defaults.db, repo_root)
    config.paths.logs_dir = _resolve(config.paths.logs_dir, defaults.logs_dir, repo_root)
    config.paths.pid_file = _resolve(config.paths.pid_file, defaults.pid_file, repo_root)

    workdir_default = Path(worktree.path) if worktree is not None else repo_root
    config.workdir = _resolve(config.workdir, workdir_default, repo_root)

    if worktree is not None and not worktree.is_main and config.worktree is None:
        config.worktree = WorktreeRef(
            name=safe_branch_name(worktree.branch),
            branch=worktree.branch,
        )

    return config


def load_config(
    config_path: Path,
    repo_root: Path | None = None,
    worktree: Worktree | None = None,
) -> SupervisorConfig:
    """Load and validate a supervisor configuration file.

    Relative paths inside the file are resolved against ``repo_root``
    (defaults to the parent of the ``.flowkeeper`` directory holding the file).
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = load_yaml_file(config_path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    try:
        config = SupervisorConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    if repo_root is None:
        repo_root = _guess_repo_root(config_path)

    logger.debug(f"Loaded config from {config_path}")
    return resolve_paths(config, repo_root, worktree)


def _guess_repo_root(config_path: Path) -> Path:
    """Walk up from a config file to the directory containing ``.flowkeeper``."""
    for parent in config_path.resolve().parents:
        if parent.name == ".flowkeeper":
            return parent.parent
    return config_path.resolve().parent


def load_worktree_config(
    name: str | None = None,
    cwd: Path | None = None,
    lister: Callable[[Path | None], list[Worktree]] = list_worktrees,
) -> SupervisorConfig:
    """Load the config of a named worktree, or of the worktree containing ``cwd``.

    Without a name, a non-main worktree with its own config wins; otherwise the
    main worktree config is used.
    """
    worktrees = lister(cwd)
    root = find_repo_root(worktrees) or (cwd or Path.cwd())

    if name:
        worktree = find_worktree(name, worktrees)
        if worktree is None:
            raise ConfigError(f"Worktree '{name}' not found")
        config_path = WorktreePaths.for_worktree(worktree, root).config
        if not config_path.exists():
            raise ConfigError(f"Config file not found for worktree '{name}' at {config_path}")
        return load_config(config_path, root, worktree)

    current = current_worktree(worktrees, cwd)
    if current is not None and not current.is_main:
        config_path = WorktreePaths.for_worktree(current, root).config
        if config_path.exists():
            logger.info(f"Detected worktree: {current.branch}")
            return load_config(config_path, root, current)

    main = next((wt for wt in worktrees if wt.is_main), None)
    return load_config(WorktreePaths.for_worktree(main, root).config, root, main)


def save_config(config: SupervisorConfig, config_path: Path) -> None:
    """Write a configuration file."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json", exclude_none=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )
    logger.debug(f"Saved config to {config_path}")
