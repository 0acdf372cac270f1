"""Workflow executor: runs a worker's steps strictly in order.

Each step is either a shell command (``sh -c`` in the worker's worktree)
or a headless agent invocation. The first failing step stops the run and
moves the worker to FAILED. A successful step advances ``current_step``
and is checkpointed before the next step starts, so a crash loses at most
the step in flight.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from gensui.shared.models.session import SessionEvent
from gensui.shared.models.worker import Worker, WorkerStatus

from .agent_process import (
    AgentInvocation,
    AgentProcessController,
    AgentRunOutcome,
    is_resume_miss,
    read_line_unbounded,
    terminate_process,
)
from .config import GensuiConfig
from .errors import (
    NonZeroExit,
    ParseAnomaly,
    SessionClosedError,
    SessionResumeMiss,
    SpawnError,
    WorkerNotFoundError,
)
from .registry import WorkerRegistry
from .stream_parser import SessionStreamParser, modified_file
from .workflow import WorkflowStep, render_template

logger = logging.getLogger(__name__)

Checkpoint = Callable[[str], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class StepResult:
    ok: bool
    exit_code: int | None = None
    detail: str = ""
    cancelled: bool = False


def template_context(worker: Worker) -> dict[str, str]:
    return {
        "issue": worker.issue or "(no issue)",
        "worker": worker.name,
        "branch": worker.branch,
        "worktree": worker.worktree,
    }


def shell_context(worker: Worker) -> dict[str, str]:
    """Placeholder values quoted for substitution into an ``sh -c`` command."""
    return {key: shlex.quote(value) for key, value in template_context(worker).items()}


class _RegistrySink:
    """Routes agent output into the worker's active session via the registry."""

    def __init__(self, registry: WorkerRegistry, name: str, checkpoint: Checkpoint) -> None:
        self._registry = registry
        self._name = name
        self._checkpoint = checkpoint

    async def on_event(self, event: SessionEvent) -> None:
        try:
            await self._registry.record_event(self._name, event, modified_file(event))
        except (SessionClosedError, WorkerNotFoundError):
            logger.debug("Dropping %s event for %s: session closed", event.kind, self._name)

    async def on_session_id(self, session_id: str) -> None:
        try:
            changed = await self._registry.capture_session_id(self._name, session_id)
        except WorkerNotFoundError:
            return
        if changed:
            await self._registry.append_log(self._name, f"Session {session_id}")
            await self._checkpoint(self._name)

    async def on_stderr(self, line: str) -> None:
        try:
            await self._registry.append_log(self._name, f"[stderr] {line}")
        except WorkerNotFoundError:
            pass

    async def on_anomaly(self, anomaly: ParseAnomaly) -> None:
        try:
            await self._registry.append_log(self._name, f"[skipped] {anomaly}")
        except WorkerNotFoundError:
            pass

    async def on_finish(self, ended_at: datetime) -> None:
        await self._registry.end_session(self._name, ended_at)


class WorkflowExecutor:
    """Runs one worker's workflow. Create one per run."""

    def __init__(
        self,
        registry: WorkerRegistry,
        config: GensuiConfig,
        checkpoint: Checkpoint,
        parser: SessionStreamParser | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._config = config
        self._checkpoint = checkpoint
        self._controller = AgentProcessController(config, parser=parser, clock=clock)
        self._command_proc: asyncio.subprocess.Process | None = None
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def request_stop(self) -> None:
        """Stop after the current step; its subprocess is cancelled now."""
        self._stop_requested = True
        if await self._controller.cancel():
            return
        proc = self._command_proc
        if proc is not None:
            await terminate_process(proc, self._config.cancel_grace_seconds)

    async def run(self, name: str, start_index: int = 0) -> ExecutionOutcome:
        try:
            return await self._run(name, start_index)
        except WorkerNotFoundError:
            # Deleted while running
            return ExecutionOutcome.STOPPED

    async def _run(self, name: str, start_index: int) -> ExecutionOutcome:
        steps = self._registry.get(name).workflow.steps
        for index in range(start_index, len(steps)):
            if self._stop_requested or not self._registry.is_running(name):
                return ExecutionOutcome.STOPPED
            step = steps[index]
            await self._registry.update(name, lambda w, s=step: self._mark_step_started(w, s))

            result = await self._execute_step(name, step)

            if self._stop_requested or not self._registry.is_running(name):
                logger.info("Worker %s stopped during step '%s'", name, step.name)
                return ExecutionOutcome.STOPPED

            if not result.ok:
                await self._fail(name, step, result)
                return ExecutionOutcome.FAILED
            completed = await self._registry.update(
                name,
                lambda w, i=index, s=step: self._mark_step_completed(w, i, s),
                log_message=f"Step '{step.name}' completed",
                category="step",
            )
            if not completed:
                return ExecutionOutcome.STOPPED
            await self._checkpoint(name)

        previous = await self._registry.transition(
            name,
            WorkerStatus.IDLE,
            expected=WorkerStatus.RUNNING,
            reason="Workflow completed",
            log_message=f"Workflow '{self._registry.get(name).workflow_name}' completed",
        )
        if previous is None:
            return ExecutionOutcome.STOPPED
        await self._checkpoint(name)
        return ExecutionOutcome.COMPLETED

    @staticmethod
    def _mark_step_started(worker: Worker, step: WorkflowStep) -> None:
        worker.current_step_name = step.name
        worker.last_event = f"Running step '{step.name}'"
        worker.append_log(f"== {step.name} ==")

    @staticmethod
    def _mark_step_completed(worker: Worker, index: int, step: WorkflowStep) -> bool:
        if worker.status is not WorkerStatus.RUNNING:
            return False
        worker.current_step = index + 1
        worker.last_event = f"Step '{step.name}' completed"
        return True

    async def _fail(self, name: str, step: WorkflowStep, result: StepResult) -> None:
        reason = f"Step '{step.name}' failed"
        if result.exit_code not in (None, 0):
            reason += f" (exit code {result.exit_code})"
        elif result.detail:
            reason += f" ({result.detail})"
        await self._registry.log_action(reason, worker=name, category="step")
        previous = await self._registry.transition(
            name,
            WorkerStatus.FAILED,
            expected=WorkerStatus.RUNNING,
            reason=result.detail or reason,
            log_message=f"Worker failed at step '{step.name}'",
        )
        if previous is not None:
            await self._checkpoint(name)

    async def _execute_step(self, name: str, step: WorkflowStep) -> StepResult:
        worker = self._registry.get(name)
        try:
            if step.agent is not None:
                return await self._run_agent_step(worker, step)
            return await self._run_command_step(worker, step)
        except (asyncio.CancelledError, WorkerNotFoundError):
            raise
        except Exception as exc:
            logger.exception("Step '%s' of %s crashed", step.name, name)
            return StepResult(ok=False, detail=f"internal error: {exc}")

    def _workdir(self, worker: Worker) -> Path:
        return Path(worker.worktree) if worker.worktree else self._config.repo_root

    # ── Command steps ──

    async def _run_command_step(self, worker: Worker, step: WorkflowStep) -> StepResult:
        name = worker.name
        command = render_template(step.command or "", shell_context(worker))
        await self._registry.append_log(name, f"$ {command}")
        if self._stop_requested:
            return StepResult(ok=False, cancelled=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                "sh", "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self._workdir(worker)),
                start_new_session=True,
            )
        except OSError as exc:
            error = SpawnError("sh", str(exc))
            await self._registry.append_log(name, str(error))
            return StepResult(ok=False, detail=str(error))

        self._command_proc = proc
        try:
            while True:
                raw = await read_line_unbounded(proc.stdout)
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                await self._registry.append_log(name, line)
            exit_code = await proc.wait()
        except asyncio.CancelledError:
            await terminate_process(proc, self._config.cancel_grace_seconds)
            raise
        finally:
            self._command_proc = None

        if self._stop_requested:
            return StepResult(ok=False, exit_code=exit_code, cancelled=True)
        if exit_code != 0:
            error = NonZeroExit(command, exit_code)
            await self._registry.append_log(name, str(error))
            return StepResult(ok=False, exit_code=exit_code, detail=str(error))
        return StepResult(ok=True, exit_code=0)

    # ── Agent steps ──

    def _build_invocation(self, worker: Worker, step: WorkflowStep) -> AgentInvocation:
        agent = step.agent
        context = template_context(worker)
        prompt = render_template(agent.prompt, context)
        workdir = self._workdir(worker)
        arg_context = {**context, "prompt": prompt, "workdir": str(workdir)}
        return AgentInvocation(
            prompt=prompt,
            cwd=workdir,
            model=agent.model,
            permission_mode=agent.effective_permission_mode,
            allowed_tools=agent.allowed_tools,
            extra_args=[render_template(a, arg_context) for a in agent.extra_args],
            resume_session_id=worker.session_id,
            worker=worker.name,
        )

    async def _invoke(self, invocation: AgentInvocation) -> AgentRunOutcome | StepResult:
        name = invocation.worker
        if self._stop_requested:
            return StepResult(ok=False, cancelled=True)
        await self._registry.begin_session(name, invocation.prompt)
        sink = _RegistrySink(self._registry, name, self._checkpoint)
        try:
            return await self._controller.run(invocation, sink)
        except SpawnError as exc:
            await self._registry.end_session(name)
            await self._registry.append_log(name, str(exc))
            return StepResult(ok=False, detail=str(exc))

    async def _run_agent_step(self, worker: Worker, step: WorkflowStep) -> StepResult:
        name = worker.name
        invocation = self._build_invocation(worker, step)
        outcome = await self._invoke(invocation)
        if isinstance(outcome, StepResult):
            return outcome

        if is_resume_miss(invocation, outcome) and not self._stop_requested:
            miss = SessionResumeMiss(invocation.resume_session_id, outcome.stderr_tail[-1])
            logger.warning("%s: %s; starting a fresh session", name, miss)
            await self._registry.update(
                name,
                lambda w: setattr(w, "session_id", None),
                log_message=f"{miss}; starting a fresh session",
            )
            await self._registry.append_log(name, str(miss))
            outcome = await self._invoke(replace(invocation, resume_session_id=None))
            if isinstance(outcome, StepResult):
                return outcome

        if outcome.cancelled:
            return StepResult(ok=False, exit_code=outcome.exit_code, cancelled=True)
        if outcome.exit_code != 0:
            error = NonZeroExit(self._config.claude_bin, outcome.exit_code)
            await self._registry.append_log(name, str(error))
            return StepResult(ok=False, exit_code=outcome.exit_code, detail=str(error))
        if outcome.failed_by_event:
            return StepResult(ok=False, exit_code=0, detail="agent reported an error result")
        return StepResult(ok=True, exit_code=0)
