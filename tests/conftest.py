from __future__ import annotations

import asyncio
import json
import shlex
import stat
from pathlib import Path

import pytest

from gensui.engine.config import GensuiConfig
from gensui.engine.errors import WorktreeFailure
from gensui.engine.worktree import ExistingWorktree


class FakeWorktreeManager:
    """In-memory WorktreeManager: plain directories under ``root``."""

    def __init__(self, root: Path, fail: bool = False) -> None:
        self.root = root
        self.fail = fail
        self.created: list[Path] = []
        self.removed: list[Path] = []
        self.existing: list[ExistingWorktree] = []

    async def create(self, worker_id: int, base_branch: str | None, branch_name: str | None) -> Path:
        if self.fail:
            raise WorktreeFailure("add", "fatal: not a git repository")
        path = self.root / f"worker-{worker_id:03d}"
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(path)
        return path

    async def remove(self, path: Path) -> None:
        self.removed.append(Path(path))

    async def list_worktrees(self) -> list[ExistingWorktree]:
        if self.fail:
            raise WorktreeFailure("list", "fatal: not a git repository")
        return list(self.existing)


def write_agent_script(
    path: Path,
    lines: list,
    exit_code: int = 0,
    stderr: list[str] | None = None,
    calls_file: Path | None = None,
    sleep: float | None = None,
) -> Path:
    """Write an executable fake agent that prints ``lines`` as stream-json.

    Dict entries are JSON encoded; strings are printed verbatim. Each
    invocation appends its arguments to ``calls_file`` as one line.
    """
    body = ["#!/bin/sh"]
    if calls_file is not None:
        body.append(
            'printf "%s\\n" "$*" >> ' + shlex.quote(str(calls_file))
        )
    for line in lines:
        text = json.dumps(line) if isinstance(line, dict) else line
        body.append(f"printf '%s\\n' {shlex.quote(text)}")
    for line in stderr or []:
        body.append(f"printf '%s\\n' {shlex.quote(line)} >&2")
    if sleep is not None:
        body.append(f"sleep {sleep}")
    body.append(f"exit {exit_code}")
    path.write_text("\n".join(body) + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def tool_use_line(name: str, file_path: str, tool_id: str, session_id: str = "sess-1") -> dict:
    return {
        "type": "assistant",
        "session_id": session_id,
        "message": {"content": [
            {"type": "tool_use", "id": tool_id, "name": name, "input": {"file_path": file_path}},
        ]},
    }


async def wait_until(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture
def config(tmp_path) -> GensuiConfig:
    repo = tmp_path / "repo"
    repo.mkdir()
    return GensuiConfig(
        repo_root=repo,
        state_dir=tmp_path / "state",
        claude_bin=str(tmp_path / "no-such-agent"),
        cancel_grace_seconds=1.0,
        spawn_retry_delay_seconds=0.01,
    )


@pytest.fixture
def worktrees(tmp_path) -> FakeWorktreeManager:
    return FakeWorktreeManager(tmp_path / "worktrees")
