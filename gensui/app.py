"""Gensui entry point: TUI dashboard, headless runner, and state listing."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import event_to_dict
from gensui.engine.config import GensuiConfig
from gensui.engine.errors import GensuiError, WorkflowConfigError
from gensui.engine.manager import WorkerManager
from gensui.engine.workflow import WorkflowConfig, load_workflow_config
from gensui.shared.models.worker import WorkerStatus
from gensui.shared.services.persistence import PersistenceManager

logger = logging.getLogger(__name__)


def configure_logging(level: str, log_dir: Path | None = None, stderr: bool = False) -> Path:
    """Route all logging to a rotating file (and optionally stderr).

    The TUI owns the terminal, so stderr logging is only enabled for the
    headless runner.
    """
    log_dir = log_dir or Path.home() / ".gensui" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "gensui.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _print_state(config: GensuiConfig) -> None:
    persistence = PersistenceManager(config.resolved_state_dir, config.max_worker_log_lines)
    result = persistence.load()
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if not result.workers:
        print("No saved workers.")
        return
    for worker in result.workers:
        step = min(worker.current_step + 1, worker.total_steps)
        print(
            f"  {worker.name:<20} {worker.status.value:<8} "
            f"{worker.workflow_name} {step}/{worker.total_steps} {worker.issue or ''}"
        )


async def _run_headless(
    config: GensuiConfig,
    workflows: WorkflowConfig,
    issue: str | None,
    prompt: str | None,
    workflow: str | None,
    worktree: Path | None = None,
) -> int:
    """Run workers without the TUI, printing registry events as JSON lines."""
    bus = EventBus()
    manager = WorkerManager(config, workflows, event_bus=bus)

    async def _print_events() -> None:
        async for event in bus.consume():
            print(json.dumps(event_to_dict(event), ensure_ascii=False), flush=True)

    printer = asyncio.create_task(_print_events(), name="event-printer")
    try:
        await manager.restore()
        if config.auto_resume:
            await manager.resume_interrupted()
        if issue is not None or prompt is not None or worktree is not None:
            await manager.provision(
                issue=issue, workflow=workflow, free_prompt=prompt, worktree=worktree,
            )
        await manager.wait_idle()
    except (GensuiError, KeyError, ValueError) as exc:
        logger.error("Headless run failed: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await manager.shutdown()
        for event in bus.drain():
            print(json.dumps(event_to_dict(event), ensure_ascii=False), flush=True)
        bus.close()
        await printer

    failed = [w.name for w in manager.registry.snapshot() if w.status is WorkerStatus.FAILED]
    return 1 if failed else 0


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="gensui",
        description="Gensui — terminal dashboard for coding-agent workers",
    )
    parser.add_argument(
        "--repo", metavar="PATH",
        help="Repository whose worktrees the workers use (default: cwd)",
    )
    parser.add_argument(
        "--workflows", metavar="FILE",
        help="Workflow definitions (default: .gensui/workflows.yaml)",
    )
    parser.add_argument(
        "--state-dir", metavar="PATH",
        help="Checkpoint directory (default: <repo>/.gensui/state)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List checkpointed workers and exit",
    )
    parser.add_argument(
        "--headless", action="store_true",
        help="Run without the TUI and print events as JSON lines",
    )
    parser.add_argument(
        "--issue", metavar="ISSUE",
        help="With --headless: provision a worker for this issue",
    )
    parser.add_argument(
        "--prompt", metavar="TEXT",
        help="With --headless: provision a free-prompt worker",
    )
    parser.add_argument(
        "--workflow", metavar="NAME",
        help="With --headless --issue: workflow to run",
    )
    parser.add_argument(
        "--worktree", metavar="PATH",
        help="With --headless: run the new worker in this existing worktree",
    )
    parser.add_argument(
        "--no-resume", action="store_true",
        help="Do not restart workers that were running at the last exit",
    )
    args = parser.parse_args()

    config = GensuiConfig.from_env()
    if args.repo:
        config.repo_root = Path(args.repo).resolve()
    if args.state_dir:
        config.state_dir = Path(args.state_dir)
    if args.workflows:
        config.workflow_file = Path(args.workflows)
    if args.no_resume:
        config.auto_resume = False

    if args.list:
        _print_state(config)
        sys.exit(0)

    log_file = configure_logging(config.log_level, stderr=args.headless)
    logger.info(
        "Starting gensui repo=%s state=%s log=%s",
        config.repo_root, config.resolved_state_dir, log_file,
    )

    try:
        workflows = load_workflow_config(config.resolve_workflow_file())
    except WorkflowConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    logger.info("Loaded workflows: %s", ", ".join(workflows.names()))

    if args.headless:
        sys.exit(asyncio.run(_run_headless(
            config, workflows, args.issue, args.prompt, args.workflow,
            Path(args.worktree).resolve() if args.worktree else None,
        )))

    from gensui.tui.app import GensuiApp

    bus = EventBus()
    manager = WorkerManager(config, workflows, event_bus=bus)
    app = GensuiApp(manager, bus, auto_resume=config.auto_resume)
    app.run()


if __name__ == "__main__":
    main()
