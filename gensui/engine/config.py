"""Configuration loaded from environment variables.

All settings have defaults. Override via GENSUI_* env vars; the CLI
overrides the repository, state directory, and workflow file on top.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class GensuiConfig:
    """Orchestrator configuration."""

    # Repository whose worktrees the workers use
    repo_root: Path = Path(".")
    # Checkpoint directory; defaults to <repo_root>/.gensui/state
    state_dir: Path | None = None
    # Workflow definitions; defaults to <repo_root>/.gensui/workflows.yaml
    workflow_file: Path | None = None

    # Headless agent binary and optional config home (CLAUDE_CONFIG_DIR)
    claude_bin: str = "claude"
    claude_home: Path | None = None

    # Seconds between SIGTERM and SIGKILL when cancelling a subprocess
    cancel_grace_seconds: float = 5.0
    # Extra spawn attempts after the first. 0 means fail fast.
    spawn_retries: int = 0
    spawn_retry_delay_seconds: float = 1.0

    # Worktrees are always kept on failure; this only affects success
    remove_worktree_on_success: bool = False
    # Reschedule workers that were running when the process last stopped
    auto_resume: bool = True

    # Bounded per-worker buffers
    max_worker_log_lines: int = 500
    max_sessions_per_worker: int = 100

    log_level: str = "INFO"

    @property
    def resolved_state_dir(self) -> Path:
        return self.state_dir or (self.repo_root / ".gensui" / "state")

    def resolve_workflow_file(self) -> Path | None:
        """Return the workflow file to load, or None to use the default."""
        if self.workflow_file is not None:
            return self.workflow_file
        base = self.repo_root / ".gensui"
        for candidate in (base / "workflows.yaml", base / "workflows.yml", base / "config.json"):
            if candidate.exists():
                return candidate
        return None

    @classmethod
    def from_env(cls) -> GensuiConfig:
        """Load configuration from GENSUI_* environment variables."""
        gensui_vars = {
            k: v for k, v in os.environ.items() if k.startswith("GENSUI_")
        }
        if gensui_vars:
            logger.info(
                "GensuiConfig.from_env: overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(gensui_vars.items())),
            )

        state_dir = os.getenv("GENSUI_STATE_DIR")
        workflow_file = os.getenv("GENSUI_WORKFLOW_FILE")
        claude_home = os.getenv("GENSUI_CLAUDE_HOME")

        config = cls(
            repo_root=Path(os.getenv("GENSUI_REPO_ROOT", str(Path.cwd()))),
            state_dir=Path(state_dir) if state_dir else None,
            workflow_file=Path(workflow_file) if workflow_file else None,
            claude_bin=os.getenv("GENSUI_CLAUDE_BIN", cls.claude_bin),
            claude_home=Path(claude_home) if claude_home else None,
            cancel_grace_seconds=float(os.getenv(
                "GENSUI_CANCEL_GRACE", str(cls.cancel_grace_seconds)
            )),
            spawn_retries=max(0, int(os.getenv(
                "GENSUI_SPAWN_RETRIES", str(cls.spawn_retries)
            ))),
            spawn_retry_delay_seconds=float(os.getenv(
                "GENSUI_SPAWN_RETRY_DELAY", str(cls.spawn_retry_delay_seconds)
            )),
            remove_worktree_on_success=_env_flag(
                "GENSUI_REMOVE_WORKTREE_ON_SUCCESS", cls.remove_worktree_on_success
            ),
            auto_resume=_env_flag("GENSUI_AUTO_RESUME", cls.auto_resume),
            max_worker_log_lines=int(os.getenv(
                "GENSUI_MAX_LOG_LINES", str(cls.max_worker_log_lines)
            )),
            max_sessions_per_worker=int(os.getenv(
                "GENSUI_MAX_SESSIONS", str(cls.max_sessions_per_worker)
            )),
            log_level=os.getenv("GENSUI_LOG_LEVEL", cls.log_level).upper(),
        )
        logger.debug(
            "GensuiConfig.from_env: repo=%s claude_bin=%s spawn_retries=%d",
            config.repo_root, config.claude_bin, config.spawn_retries,
        )
        return config
