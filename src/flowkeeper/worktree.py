"""Git worktree discovery and per-worktree file layout."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from flowkeeper.models import Worktree

STATE_DIR_NAME = ".flowkeeper"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def safe_branch_name(branch: str) -> str:
    """Make a branch name usable as a single path component."""
    return _UNSAFE_CHARS.sub("_", branch)


@dataclass(frozen=True)
class WorktreePaths:
    """Default files of one worktree, relative to the repository root."""

    config: Path
    db: Path
    program: Path
    logs_dir: Path
    pid_file: Path

    @classmethod
    def for_worktree(cls, worktree: Worktree | None, repo_root: Path) -> "WorktreePaths":
        """Build the paths for a worktree.

        The main worktree (or None) uses the fixed, unnamespaced layout under
        ``.flowkeeper/``; any other worktree is namespaced by its branch.
        """
        base = repo_root / STATE_DIR_NAME
        if worktree is not None and not worktree.is_main:
            base = base / "worktrees" / safe_branch_name(worktree.branch)
        return cls(
            config=base / "config.yaml",
            db=base / "workflow.db",
            program=base / "workflow.py",
            logs_dir=base / "logs",
            pid_file=base / "supervisor.pid",
        )


def parse_worktree_list(output: str) -> list[Worktree]:
    """Parse the output of ``git worktree list --porcelain``.

    Bare entries are skipped, detached HEADs get a ``detached@<sha7>`` branch
    and the first entry is the main worktree.
    """
    worktrees: list[Worktree] = []
    current: dict = {}

    def flush() -> None:
        if current.get("path") and current.get("branch") and "commit_hash" in current:
            worktrees.append(Worktree(**current))

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("worktree "):
            flush()
            current = {"path": line[len("worktree "):], "is_main": False}
        elif line.startswith("HEAD "):
            current["commit_hash"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current = {}
        elif line == "detached":
            sha = current.get("commit_hash", "")[:7] or "unknown"
            current["branch"] = f"detached@{sha}"

    flush()

    if worktrees:
        worktrees[0].is_main = True

    return worktrees


def list_worktrees(cwd: Path | None = None) -> list[Worktree]:
    """List all worktrees of the repository containing ``cwd``."""
    try:
        result = subprocess.run(
            ["git", "worktree", "list", "--porcelain"],
            cwd=cwd,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        logger.error(f"Failed to list worktrees: {e}")
        return []

    if result.returncode != 0:
        logger.error(f"git worktree list failed: {result.stderr.strip()}")
        return []

    return parse_worktree_list(result.stdout)


def find_worktree(name: str, worktrees: list[Worktree]) -> Worktree | None:
    """Find a worktree by branch name or by its sanitized name."""
    for worktree in worktrees:
        if worktree.branch == name or safe_branch_name(worktree.branch) == name:
            return worktree
    return None


def current_worktree(worktrees: list[Worktree], cwd: Path | None = None) -> Worktree | None:
    """Return the worktree containing ``cwd``, preferring the deepest match."""
    here = (cwd or Path.cwd()).resolve()
    best: Worktree | None = None
    for worktree in worktrees:
        root = Path(worktree.path).resolve()
        if here == root or root in here.parents:
            if best is None or len(str(root)) > len(str(Path(best.path).resolve())):
                best = worktree
    return best


def repo_root(worktrees: list[Worktree]) -> Path | None:
    """Path of the main worktree, which anchors every per-worktree file."""
    for worktree in worktrees:
        if worktree.is_main:
            return Path(worktree.path)
    return None
