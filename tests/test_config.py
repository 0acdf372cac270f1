from __future__ import annotations

from pathlib import Path

from gensui.engine.config import GensuiConfig


def test_defaults() -> None:
    config = GensuiConfig(repo_root=Path("/repo"))

    assert config.claude_bin == "claude"
    assert config.spawn_retries == 0
    assert config.resolved_state_dir == Path("/repo/.gensui/state")
    assert config.remove_worktree_on_success is False


def test_from_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("GENSUI_REPO_ROOT", str(tmp_path))
    monkeypatch.setenv("GENSUI_STATE_DIR", str(tmp_path / "s"))
    monkeypatch.setenv("GENSUI_CLAUDE_BIN", "/opt/claude")
    monkeypatch.setenv("GENSUI_SPAWN_RETRIES", "2")
    monkeypatch.setenv("GENSUI_CANCEL_GRACE", "0.5")
    monkeypatch.setenv("GENSUI_REMOVE_WORKTREE_ON_SUCCESS", "yes")
    monkeypatch.setenv("GENSUI_AUTO_RESUME", "0")

    config = GensuiConfig.from_env()

    assert config.repo_root == tmp_path
    assert config.resolved_state_dir == tmp_path / "s"
    assert config.claude_bin == "/opt/claude"
    assert config.spawn_retries == 2
    assert config.cancel_grace_seconds == 0.5
    assert config.remove_worktree_on_success is True
    assert config.auto_resume is False


def test_negative_spawn_retries_clamped(monkeypatch) -> None:
    monkeypatch.setenv("GENSUI_SPAWN_RETRIES", "-3")

    assert GensuiConfig.from_env().spawn_retries == 0


def test_workflow_file_discovery(tmp_path) -> None:
    config = GensuiConfig(repo_root=tmp_path)
    assert config.resolve_workflow_file() is None

    target = tmp_path / ".gensui" / "workflows.yml"
    target.parent.mkdir()
    target.write_text("workflows: []\n", encoding="utf-8")
    assert config.resolve_workflow_file() == target

    explicit = tmp_path / "custom.yaml"
    config.workflow_file = explicit
    assert config.resolve_workflow_file() == explicit
