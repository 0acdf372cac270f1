"""Worker manager: the operator-facing command surface.

Owns one asyncio task per running worker, wires each run to a fresh
WorkflowExecutor, and checkpoints the registry after every state change
the executor reports. The TUI and the headless CLI only talk to this
class.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import WarningRaised
from gensui.shared.models.worker import Worker, WorkerStatus
from gensui.shared.services.persistence import PersistenceManager, RestoreResult

from .action_log import COMPACT_KEEP, ActionLog
from .config import GensuiConfig
from .errors import (
    PersistenceFailure,
    WorkerConflictError,
    WorktreeFailure,
)
from .executor import ExecutionOutcome, WorkflowExecutor
from .names import default_name, validate_name
from .registry import WorkerRegistry
from .stream_parser import SessionStreamParser
from .workflow import (
    Workflow,
    WorkflowConfig,
    continuation_step,
    default_config,
    free_prompt_workflow,
)
from .worktree import BRANCH_PREFIX, ExistingWorktree, GitWorktreeManager, WorktreeManager

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerManager:
    """Creates, runs, pauses, and checkpoints workers.

    Every operation that changes a worker writes its checkpoint before
    returning, so the state directory always reflects the last completed
    operator command.
    """

    def __init__(
        self,
        config: GensuiConfig,
        workflows: WorkflowConfig | None = None,
        *,
        registry: WorkerRegistry | None = None,
        persistence: PersistenceManager | None = None,
        worktrees: WorktreeManager | None = None,
        event_bus: EventBus | None = None,
        parser: SessionStreamParser | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._workflows = workflows or default_config()
        self._bus = event_bus
        self._registry = registry or WorkerRegistry(
            action_log=ActionLog(),
            event_bus=event_bus,
            max_sessions=config.max_sessions_per_worker,
            max_log_lines=config.max_worker_log_lines,
        )
        self._persistence = persistence or PersistenceManager(
            config.resolved_state_dir, config.max_worker_log_lines,
        )
        self._worktrees = worktrees or GitWorktreeManager(config.repo_root)
        self._parser = parser
        self._clock = clock

        self._tasks: dict[str, asyncio.Task] = {}
        self._executors: dict[str, WorkflowExecutor] = {}
        # Workers whose last checkpoint write failed
        self._pending: set[str] = set()
        # Set while the action log or manager state could not be written
        self._state_pending = False
        self._save_lock = asyncio.Lock()
        self._selected = self._workflows.default().name
        self._free_prompts = 0

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    @property
    def workflows(self) -> WorkflowConfig:
        return self._workflows

    @property
    def selected_workflow(self) -> Workflow:
        return self._workflows.get(self._selected) or self._workflows.default()

    @property
    def pending_checkpoints(self) -> set[str]:
        return set(self._pending)

    @property
    def state_pending(self) -> bool:
        return self._state_pending

    def is_active(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    # ── Provisioning ──

    async def provision(
        self,
        issue: str | None = None,
        workflow: str | None = None,
        name: str | None = None,
        free_prompt: str | None = None,
        worktree: Path | None = None,
    ) -> Worker:
        """Create a worktree, register a RUNNING worker, and start its workflow.

        With ``worktree`` the worker is attached to that existing working
        copy instead; it must appear in ``list_worktrees()`` and is never
        removed by gensui.

        Raises WorktreeFailure (nothing is registered), WorkerConflictError,
        NameValidationError, or KeyError for an unknown workflow name.
        """
        if name is not None:
            name = validate_name(name)
            if name in self._registry:
                raise WorkerConflictError(name)

        if free_prompt is not None:
            if not free_prompt.strip():
                raise ValueError("free prompt must not be empty")
            self._free_prompts += 1
            wf = free_prompt_workflow(free_prompt.strip(), self._free_prompts)
        elif workflow is not None:
            found = self._workflows.get(workflow)
            if found is None:
                raise KeyError(f"Unknown workflow: {workflow}")
            wf = copy.deepcopy(found)
        else:
            wf = copy.deepcopy(self.selected_workflow)

        worker_id = await self._registry.allocate_id()
        name = name or default_name(worker_id)
        if name in self._registry:
            raise WorkerConflictError(name)

        try:
            if worktree is not None:
                path, branch = await self._attach_worktree(Path(worktree))
            else:
                branch = f"{BRANCH_PREFIX}worker-{worker_id:03d}-{int(time.time())}"
                path = await self._worktrees.create(worker_id, None, branch)
        except WorktreeFailure as exc:
            logger.error("Provisioning %s failed: %s", name, exc)
            await self._registry.log_action(
                f"Provisioning {name} failed: {exc}", worker=name, category="error",
            )
            await self._save_action_log()
            raise

        worker = Worker(
            id=worker_id,
            name=name,
            workflow=wf,
            status=WorkerStatus.RUNNING,
            issue=issue,
            branch=branch,
            worktree=str(path),
            owns_worktree=worktree is None,
            last_event="Provisioned",
        )
        worker.append_log(f"Worktree {path} on branch {branch}")
        await self._registry.add(worker)
        label = f" for {issue}" if issue else ""
        await self._registry.log_action(
            f"Provisioned {name}{label} with workflow '{wf.name}'", worker=name,
        )
        await self.checkpoint(name)
        self._schedule(name, 0)
        return self._registry.get(name)

    async def list_worktrees(self) -> list[ExistingWorktree]:
        """Existing working copies a new worker can be attached to. Raises WorktreeFailure."""
        return await self._worktrees.list_worktrees()

    async def _attach_worktree(self, path: Path) -> tuple[Path, str]:
        resolved = path.resolve()
        for entry in await self._worktrees.list_worktrees():
            if entry.path.resolve() != resolved:
                continue
            if entry.bare:
                raise WorktreeFailure("attach", f"{path} is a bare repository")
            for worker in self._registry.snapshot():
                if worker.worktree and Path(worker.worktree).resolve() == resolved:
                    raise WorktreeFailure("attach", f"{path} is already used by {worker.name}")
            return entry.path, entry.label
        raise WorktreeFailure("attach", f"{path} is not a worktree of this repository")

    # ── Run control ──

    def _schedule(self, name: str, start_index: int) -> None:
        if self.is_active(name):
            raise WorkerConflictError(name, "is already running")
        executor = WorkflowExecutor(
            self._registry, self._config, self.checkpoint,
            parser=self._parser, clock=self._clock,
        )
        self._executors[name] = executor
        self._tasks[name] = asyncio.create_task(
            self._run_worker(name, executor, start_index),
            name=f"worker-{name}",
        )
        logger.info("Scheduled %s from step %d", name, start_index)

    async def _run_worker(
        self, name: str, executor: WorkflowExecutor, start_index: int,
    ) -> ExecutionOutcome | None:
        try:
            outcome = await executor.run(name, start_index)
        except asyncio.CancelledError:
            logger.info("Worker %s task cancelled", name)
            raise
        except Exception as exc:
            logger.exception("Worker %s run crashed", name)
            if name in self._registry:
                previous = await self._registry.transition(
                    name,
                    WorkerStatus.FAILED,
                    expected=WorkerStatus.RUNNING,
                    reason=f"internal error: {exc}",
                    log_message=f"Worker {name} crashed: {exc}",
                    category="error",
                )
                if previous is not None:
                    await self.checkpoint(name)
            return None
        finally:
            if self._tasks.get(name) is asyncio.current_task():
                del self._tasks[name]
                self._executors.pop(name, None)

        logger.info("Worker %s finished: %s", name, outcome.value)
        if outcome is ExecutionOutcome.COMPLETED and self._config.remove_worktree_on_success:
            await self._remove_worktree(name)
        return outcome

    async def _stop_run(self, name: str) -> None:
        """Cancel the worker's in-flight step and wait for its task to end."""
        executor = self._executors.get(name)
        if executor is not None:
            await executor.request_stop()
        await self.join(name)

    async def join(self, name: str) -> None:
        task = self._tasks.get(name)
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})

    async def wait_idle(self) -> None:
        """Wait until no worker task is running."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.wait(tasks)

    async def pause(self, name: str) -> None:
        """RUNNING -> PAUSED. The interrupted step is re-run on resume."""
        await self._registry.transition(
            name,
            WorkerStatus.PAUSED,
            reason="Paused by operator",
            log_message=f"Paused {name}",
        )
        await self._stop_run(name)
        await self.checkpoint(name)

    async def resume(self, name: str) -> None:
        """Return a paused, failed, or idle worker to RUNNING.

        Execution continues from the first unfinished step, so a failed
        step is retried.
        """
        if self._registry.is_running(name):
            raise WorkerConflictError(name, "is already running")
        await self.join(name)
        worker = self._registry.get(name)
        if worker.current_step >= worker.total_steps:
            raise WorkerConflictError(name, "has no remaining steps; restart it instead")
        await self._registry.transition(
            name,
            WorkerStatus.RUNNING,
            expected=worker.status,
            reason="Resumed by operator",
            log_message=f"Resumed {name} at step {worker.current_step + 1}/{worker.total_steps}",
        )
        await self.checkpoint(name)
        self._schedule(name, worker.current_step)

    async def toggle_pause(self, name: str) -> WorkerStatus:
        if self._registry.is_running(name):
            await self.pause(name)
        else:
            await self.resume(name)
        return self._registry.status(name)

    async def restart(self, name: str) -> None:
        """Run the workflow again from its first step in a fresh session."""
        if self._registry.is_running(name):
            await self.pause(name)
        await self.join(name)

        def reset(worker: Worker) -> None:
            worker.current_step = 0
            worker.current_step_name = None
            worker.session_id = None
            worker.append_log("== restart ==")

        await self._registry.update(name, reset)
        await self._registry.transition(
            name,
            WorkerStatus.RUNNING,
            reason="Restarted by operator",
            log_message=f"Restarted {name}",
        )
        await self.checkpoint(name)
        self._schedule(name, 0)

    async def send_prompt(
        self, name: str, prompt: str, permission_mode: str | None = None,
    ) -> None:
        """Continue the worker's session with an operator prompt.

        A running step is interrupted. The prompt becomes a new trailing
        step that resumes the stored session id.
        """
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("prompt must not be empty")
        await self._stop_run(name)

        def append(worker: Worker) -> int:
            existing = sum(1 for s in worker.workflow.steps if s.name.startswith("continue-"))
            step = continuation_step(existing + 1, prompt, permission_mode)
            worker.workflow = replace(worker.workflow, steps=[*worker.workflow.steps, step])
            worker.current_step = len(worker.workflow.steps) - 1
            worker.current_step_name = step.name
            return worker.current_step

        index = await self._registry.update(name, append)
        preview = prompt if len(prompt) <= 60 else prompt[:57] + "..."
        message = f"Prompt sent to {name}: {preview}"
        if self._registry.is_running(name):
            await self._registry.log_action(message, worker=name, category="worker")
        else:
            await self._registry.transition(
                name, WorkerStatus.RUNNING, reason="Operator prompt", log_message=message,
            )
        await self.checkpoint(name)
        self._schedule(name, index)

    # ── Registry housekeeping ──

    async def delete(self, name: str, remove_worktree: bool = False) -> Worker:
        """Stop, unregister, and forget a worker. Its worktree is kept unless asked."""
        await self._stop_run(name)
        worker = await self._registry.remove(name)
        self._pending.discard(name)
        try:
            await asyncio.to_thread(self._persistence.delete_worker, name)
        except PersistenceFailure as exc:
            logger.error("Could not delete state for %s: %s", name, exc)
            await self._registry.log_action(str(exc), worker=name, category="error")
        if remove_worktree and worker.worktree and worker.owns_worktree:
            await self._dispose_worktree(name, Path(worker.worktree))
        await self._registry.log_action(f"Deleted {name}", worker=name)
        await self._save_action_log()
        return worker

    async def rename(self, old_name: str, new_name: str) -> str:
        new_name = validate_name(new_name)
        if self.is_active(old_name) and not self._registry.is_running(old_name):
            await self.join(old_name)
        await self._registry.rename(old_name, new_name)
        if old_name in self._pending:
            self._pending.discard(old_name)
            self._pending.add(new_name)
        worker = self._registry.get(new_name)
        try:
            await asyncio.to_thread(self._persistence.rename_worker, worker, old_name)
        except PersistenceFailure as exc:
            logger.error("Could not persist rename of %s: %s", old_name, exc)
            self._pending.add(new_name)
        await self._registry.log_action(f"Renamed {old_name} to {new_name}", worker=new_name)
        await self._save_action_log()
        return new_name

    async def select_workflow(self, name: str) -> Workflow:
        workflow = self._workflows.get(name)
        if workflow is None:
            raise KeyError(f"Unknown workflow: {name}")
        self._selected = workflow.name
        await self._registry.log_action(f"Workflow for new workers: {workflow.name}")
        await self._save_action_log()
        return workflow

    async def cycle_workflow(self) -> Workflow:
        return await self.select_workflow(self._workflows.next_after(self._selected).name)

    async def compact_action_log(self, keep: int = COMPACT_KEEP) -> int:
        removed = await self._registry.compact_action_log(keep)
        logger.info("Action log compacted: %d entries removed", removed)
        await self._save_action_log()
        return removed

    async def _dispose_worktree(self, name: str, path: Path) -> bool:
        try:
            await self._worktrees.remove(path)
        except WorktreeFailure as exc:
            logger.warning("Worktree for %s left in place: %s", name, exc)
            await self._registry.log_action(str(exc), worker=name, category="error")
            return False
        return True

    async def _remove_worktree(self, name: str) -> None:
        if name not in self._registry:
            return
        worker = self._registry.get(name)
        if not worker.owns_worktree:
            return
        if worker.worktree and await self._dispose_worktree(name, Path(worker.worktree)):
            await self._registry.update(
                name,
                lambda w: setattr(w, "worktree", ""),
                log_message=f"Removed worktree of {name}",
            )
            await self.checkpoint(name)

    # ── Restore & checkpoint ──

    async def restore(self) -> RestoreResult:
        """Load the last checkpoint into the registry. Never raises for bad files."""
        result = await asyncio.to_thread(self._persistence.load)
        for worker in result.workers:
            # A session left open by a crash cannot receive more events
            worker.end_session()
        await self._registry.restore(result.workers, result.action_log, result.next_id)
        if result.default_workflow and self._workflows.get(result.default_workflow):
            self._selected = result.default_workflow
        for warning in result.warnings:
            await self._warn(warning)
        return result

    async def resume_interrupted(self) -> list[str]:
        """Reschedule workers that were RUNNING at the last checkpoint."""
        resumed = []
        for worker in self._registry.snapshot():
            if worker.status is not WorkerStatus.RUNNING or self.is_active(worker.name):
                continue
            await self._registry.log_action(
                f"Resuming {worker.name} at step {worker.current_step + 1}/{worker.total_steps}",
                worker=worker.name,
            )
            self._schedule(worker.name, worker.current_step)
            resumed.append(worker.name)
        return resumed

    async def _warn(self, message: str, worker: str | None = None) -> None:
        """Record a warning in the action log and surface it to the operator."""
        await self._registry.log_action(message, worker=worker, category="warning")
        if self._bus is not None:
            await self._bus.emit(WarningRaised(message=message))

    async def _save_worker(self, name: str) -> bool:
        worker = self._registry.get(name)
        for attempt in (1, 2):
            try:
                await asyncio.to_thread(self._persistence.save_worker, worker)
            except PersistenceFailure as exc:
                if attempt == 1:
                    logger.warning("Checkpoint of %s failed, retrying: %s", name, exc)
                    continue
                logger.error("Checkpoint of %s failed: %s", name, exc)
                if name not in self._pending:
                    await self._warn(
                        f"Checkpoint failed for {name}: {exc.reason}; will retry", worker=name,
                    )
                return False
            if name in self._pending:
                await self._registry.log_action(f"Checkpoint of {name} recovered", worker=name)
            return True
        return False

    async def _write_manager_state(self) -> None:
        entries = self._registry.action_log.entries()
        await asyncio.to_thread(self._persistence.save_action_log, entries)
        await asyncio.to_thread(
            self._persistence.save_manager_state, self._registry.next_id, self._selected,
        )

    async def _save_action_log(self) -> bool:
        """Write the action log and manager state, retrying once.

        A failure sets ``state_pending`` until a later write succeeds.
        """
        for attempt in (1, 2):
            try:
                await self._write_manager_state()
            except PersistenceFailure as exc:
                if attempt == 1:
                    logger.warning("Checkpoint of manager state failed, retrying: %s", exc)
                    continue
                logger.error("Checkpoint of manager state failed: %s", exc)
                if not self._state_pending:
                    self._state_pending = True
                    await self._warn(f"Could not save the action log: {exc.reason}; will retry")
                return False
            if self._state_pending:
                self._state_pending = False
                logger.info("Manager state checkpoint recovered")
                await self._registry.log_action("Action log checkpoint recovered")
                # Persist the recovery entry too
                await self._write_manager_state()
            return True
        return False

    async def checkpoint(self, name: str | None = None) -> bool:
        """Write ``name`` (plus any earlier failed writes) and the action log.

        Returns False when something could not be written; those workers
        are retried on the next checkpoint.
        """
        async with self._save_lock:
            targets = set(self._pending)
            if name is not None:
                targets.add(name)
            ok = True
            for target in sorted(targets):
                if target not in self._registry:
                    self._pending.discard(target)
                    continue
                if await self._save_worker(target):
                    self._pending.discard(target)
                else:
                    self._pending.add(target)
                    ok = False
            return await self._save_action_log() and ok

    async def shutdown(self) -> list[PersistenceFailure]:
        """Cancel every worker task and write a final checkpoint.

        Workers keep their RUNNING status on disk so the next start
        resumes them.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._executors.clear()
        async with self._save_lock:
            failures = await asyncio.to_thread(
                self._persistence.save_all,
                self._registry.snapshot(),
                self._registry.action_log.entries(),
                self._registry.next_id,
                self._selected,
            )
        if not failures:
            self._pending.clear()
        logger.info("Shutdown complete (%d task(s) cancelled)", len(tasks))
        return failures
