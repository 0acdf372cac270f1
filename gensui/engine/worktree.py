"""Per-worker isolated working copies.

The orchestrator only depends on the ``WorktreeManager`` protocol.
``GitWorktreeManager`` implements it with ``git worktree`` under
``<repo>/.worktrees/``.
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import WorktreeFailure

logger = logging.getLogger(__name__)

WORKTREE_DIR = ".worktrees"
BRANCH_PREFIX = "gensui/"


@dataclass(frozen=True)
class ExistingWorktree:
    """One entry of ``git worktree list``."""
    path: Path
    head: str = ""
    branch: str | None = None
    detached: bool = False
    bare: bool = False
    locked: bool = False

    @property
    def label(self) -> str:
        if self.branch:
            return self.branch
        return "(bare)" if self.bare else "(detached HEAD)"


def parse_worktree_list(text: str) -> list[ExistingWorktree]:
    """Parse the output of ``git worktree list --porcelain``.

    Records are separated by blank lines. Branch refs lose their
    ``refs/heads/`` prefix.
    """
    worktrees: list[ExistingWorktree] = []
    current: dict = {}
    for line in [*text.splitlines(), ""]:
        if not line:
            if "path" in current:
                worktrees.append(ExistingWorktree(**current))
            current = {}
            continue
        if line.startswith("worktree "):
            current["path"] = Path(line[len("worktree "):])
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True
        elif line.startswith("locked"):
            current["locked"] = True
    return worktrees


class WorktreeManager(Protocol):
    async def create(self, worker_id: int, base_branch: str | None, branch_name: str | None) -> Path:
        """Create a working copy and return its path. Raises WorktreeFailure."""
        ...

    async def remove(self, path: Path) -> None:
        """Dispose of a working copy. Raises WorktreeFailure."""
        ...

    async def list_worktrees(self) -> list[ExistingWorktree]:
        """Working copies that already exist. Raises WorktreeFailure."""
        ...


class GitWorktreeManager:
    """``git worktree`` backed implementation of WorktreeManager."""

    def __init__(self, repo_root: Path, timeout: float = 60.0) -> None:
        self._repo_root = Path(repo_root)
        self._timeout = timeout

    def _git(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=str(self._repo_root),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise WorktreeFailure(args[0] if args else "git", "command timed out") from exc
        except FileNotFoundError as exc:
            raise WorktreeFailure(args[0] if args else "git", "git not found") from exc

    def current_branch(self) -> str | None:
        """Branch checked out in the main repository, or None when detached."""
        try:
            result = self._git("rev-parse", "--abbrev-ref", "HEAD")
        except WorktreeFailure:
            return None
        branch = result.stdout.strip()
        if result.returncode != 0 or not branch or branch == "HEAD":
            return None
        return branch

    def _create_sync(self, worker_id: int, base_branch: str | None, branch_name: str | None) -> Path:
        worktree_name = f"worker-{worker_id:03d}-{int(time.time())}"
        path = self._repo_root / WORKTREE_DIR / worktree_name
        path.parent.mkdir(parents=True, exist_ok=True)
        branch = branch_name or f"{BRANCH_PREFIX}{worktree_name}"
        base = base_branch or self.current_branch() or "HEAD"

        result = self._git("worktree", "add", str(path), "-b", branch, base)
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or "unknown error"
            raise WorktreeFailure("add", detail)
        logger.info("Created worktree %s on branch %s (base %s)", path, branch, base)
        return path

    def _remove_sync(self, path: Path) -> None:
        result = self._git("worktree", "remove", "--force", str(path))
        if result.returncode != 0:
            raise WorktreeFailure("remove", result.stderr.strip() or "unknown error")
        logger.info("Removed worktree %s", path)

    def _list_sync(self) -> list[ExistingWorktree]:
        result = self._git("worktree", "list", "--porcelain")
        if result.returncode != 0:
            raise WorktreeFailure("list", result.stderr.strip() or "unknown error")
        return parse_worktree_list(result.stdout)

    async def create(self, worker_id: int, base_branch: str | None, branch_name: str | None) -> Path:
        return await asyncio.to_thread(self._create_sync, worker_id, base_branch, branch_name)

    async def remove(self, path: Path) -> None:
        await asyncio.to_thread(self._remove_sync, Path(path))

    async def list_worktrees(self) -> list[ExistingWorktree]:
        return await asyncio.to_thread(self._list_sync)

