from __future__ import annotations

import asyncio
import shlex

import pytest

from conftest import tool_use_line, wait_until, write_agent_script
from gensui.engine.executor import ExecutionOutcome, WorkflowExecutor
from gensui.engine.registry import WorkerRegistry
from gensui.engine.workflow import AgentStep, Workflow, WorkflowStep
from gensui.shared.models.worker import Worker, WorkerStatus


class CheckpointRecorder:
    def __init__(self, registry: WorkerRegistry) -> None:
        self.registry = registry
        self.steps: list[int] = []

    async def __call__(self, name: str) -> None:
        self.steps.append(self.registry.get(name).current_step)


async def _setup(tmp_path, steps: list[WorkflowStep], **worker_fields):
    registry = WorkerRegistry()
    worktree = tmp_path / "wt"
    worktree.mkdir(exist_ok=True)
    worker = Worker(
        id=1,
        name="w1",
        workflow=Workflow(name="wf", steps=steps),
        issue="#7",
        branch="gensui/worker-001",
        worktree=str(worktree),
        **worker_fields,
    )
    await registry.add(worker)
    return registry, worktree, CheckpointRecorder(registry)


def _agent_step(name: str = "agent") -> WorkflowStep:
    return WorkflowStep(name=name, agent=AgentStep(prompt="Work on {{issue}} in {{worktree}}"))


@pytest.mark.asyncio
async def test_failing_step_halts_workflow(config, tmp_path) -> None:
    marker = tmp_path / "test-ran"
    registry, _, checkpoint = await _setup(tmp_path, [
        WorkflowStep(name="analyze", command="echo analyzing"),
        WorkflowStep(name="implement", command="echo boom >&2; exit 1"),
        WorkflowStep(name="test", command=f"touch {shlex.quote(str(marker))}"),
    ])

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    worker = registry.get("w1")
    assert outcome is ExecutionOutcome.FAILED
    assert worker.status is WorkerStatus.FAILED
    assert worker.current_step == 1
    assert not marker.exists()
    step_entries = [e.message for e in registry.action_log if e.category == "step"]
    assert step_entries == [
        "Step 'analyze' completed",
        "Step 'implement' failed (exit code 1)",
    ]
    assert "boom" in worker.logs
    assert checkpoint.steps == [1, 1]


@pytest.mark.asyncio
async def test_all_steps_succeed_and_worker_goes_idle(config, tmp_path) -> None:
    registry, worktree, checkpoint = await _setup(tmp_path, [
        WorkflowStep(name="one", command="echo {{issue}} {{worker}} > out.txt"),
        WorkflowStep(name="two", command="cat out.txt"),
    ])

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    worker = registry.get("w1")
    assert outcome is ExecutionOutcome.COMPLETED
    assert worker.status is WorkerStatus.IDLE
    assert worker.current_step == 2
    assert (worktree / "out.txt").read_text().strip() == "#7 w1"
    assert "#7 w1" in worker.logs
    assert checkpoint.steps == [1, 2, 2]
    assert registry.action_log.entries()[-1].message == "Workflow 'wf' completed"


@pytest.mark.asyncio
async def test_agent_step_accumulates_tool_uses_and_files(config, tmp_path) -> None:
    config.claude_bin = str(write_agent_script(tmp_path / "agent", [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        tool_use_line("Edit", "a.rs", "t1"),
        tool_use_line("Edit", "a.rs", "t2"),
        tool_use_line("Write", "b.rs", "t3"),
    ]))
    registry, _, checkpoint = await _setup(tmp_path, [_agent_step()])

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    worker = registry.get("w1")
    [session] = worker.sessions
    assert outcome is ExecutionOutcome.COMPLETED
    assert session.total_tool_uses == 3
    assert session.files_modified == {"a.rs", "b.rs"}
    assert session.closed
    assert session.prompt.startswith("Work on #7 in ")
    assert worker.session_id == "sess-1"
    assert worker.files_modified == {"a.rs", "b.rs"}


@pytest.mark.asyncio
async def test_agent_error_result_fails_the_step(config, tmp_path) -> None:
    config.claude_bin = str(write_agent_script(tmp_path / "agent", [
        {"type": "result", "is_error": True, "result": "context overflow"},
    ]))
    registry, _, checkpoint = await _setup(tmp_path, [_agent_step(), _agent_step("second")])

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    assert outcome is ExecutionOutcome.FAILED
    assert registry.status("w1") is WorkerStatus.FAILED
    assert len(registry.get("w1").sessions) == 1


@pytest.mark.asyncio
async def test_spawn_error_fails_the_worker(config, tmp_path) -> None:
    registry, _, checkpoint = await _setup(tmp_path, [_agent_step()])

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    worker = registry.get("w1")
    assert outcome is ExecutionOutcome.FAILED
    assert worker.status is WorkerStatus.FAILED
    assert worker.sessions[0].closed
    assert any("Failed to spawn" in line for line in worker.logs)


@pytest.mark.asyncio
async def test_rejected_session_id_falls_back_to_fresh_session(config, tmp_path) -> None:
    script = tmp_path / "agent"
    script.write_text(
        "#!/bin/sh\n"
        'case "$*" in\n'
        '  *--resume*) echo "No conversation found with session ID: stale" >&2; exit 1;;\n'
        "esac\n"
        """printf '%s\\n' '{"type":"system","subtype":"init","session_id":"fresh"}'\n"""
        """printf '%s\\n' '{"type":"result","subtype":"success","result":"ok"}'\n""",
        encoding="utf-8",
    )
    script.chmod(0o755)
    config.claude_bin = str(script)
    registry, _, checkpoint = await _setup(tmp_path, [_agent_step()], session_id="stale")

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    worker = registry.get("w1")
    assert outcome is ExecutionOutcome.COMPLETED
    assert worker.session_id == "fresh"
    assert len(worker.sessions) == 2
    assert worker.sessions[0].events == []
    assert any("could not resume session stale" in line for line in worker.logs)


@pytest.mark.asyncio
async def test_stop_during_step_does_not_fail_worker(config, tmp_path) -> None:
    registry, _, checkpoint = await _setup(tmp_path, [
        WorkflowStep(name="slow", command="sleep 30"),
        WorkflowStep(name="after", command="echo after"),
    ])
    executor = WorkflowExecutor(registry, config, checkpoint)
    task = asyncio.create_task(executor.run("w1"))
    await wait_until(lambda: "$ sleep 30" in registry.get("w1").logs)

    await registry.transition("w1", WorkerStatus.PAUSED)
    await executor.request_stop()
    outcome = await asyncio.wait_for(task, timeout=10)

    worker = registry.get("w1")
    assert outcome is ExecutionOutcome.STOPPED
    assert worker.status is WorkerStatus.PAUSED
    assert worker.current_step == 0
    assert "after" not in worker.logs
    assert (WorkerStatus.PAUSED, WorkerStatus.FAILED) not in worker.transitions


@pytest.mark.asyncio
async def test_run_starts_at_given_index(config, tmp_path) -> None:
    registry, _, checkpoint = await _setup(tmp_path, [
        WorkflowStep(name="one", command="echo one"),
        WorkflowStep(name="two", command="echo two"),
    ], current_step=1)

    await WorkflowExecutor(registry, config, checkpoint).run("w1", start_index=1)

    logs = registry.get("w1").logs
    assert "two" in logs
    assert "one" not in logs


@pytest.mark.asyncio
async def test_placeholders_are_quoted_in_command_steps(config, tmp_path) -> None:
    registry, worktree, checkpoint = await _setup(tmp_path, [
        WorkflowStep(name="record", command="echo {{issue}} > issue.txt"),
    ])
    await registry.update("w1", lambda w: setattr(w, "issue", "#42; touch pwned $(id)"))

    outcome = await WorkflowExecutor(registry, config, checkpoint).run("w1")

    assert outcome is ExecutionOutcome.COMPLETED
    assert (worktree / "issue.txt").read_text().strip() == "#42; touch pwned $(id)"
    assert not (worktree / "pwned").exists()


def test_agent_prompts_keep_raw_placeholder_values(config, tmp_path) -> None:
    worker = Worker(
        id=1,
        name="w1",
        workflow=Workflow(name="wf", steps=[_agent_step()]),
        issue="#42; it's broken",
        worktree=str(tmp_path),
    )
    executor = WorkflowExecutor(WorkerRegistry(), config, CheckpointRecorder(WorkerRegistry()))

    invocation = executor._build_invocation(worker, worker.workflow.steps[0])

    assert invocation.prompt == f"Work on #42; it's broken in {tmp_path}"


class _StopOnCommandRegistry(WorkerRegistry):
    """Requests a stop right after the command line is logged, before spawning."""

    executor: WorkflowExecutor | None = None

    async def append_log(self, name: str, line: str) -> None:
        await super().append_log(name, line)
        if line.startswith("$ ") and self.executor is not None:
            await self.executor.request_stop()


@pytest.mark.asyncio
async def test_stop_before_spawn_skips_the_command(config, tmp_path) -> None:
    registry = _StopOnCommandRegistry()
    worktree = tmp_path / "wt"
    worktree.mkdir()
    await registry.add(Worker(
        id=1,
        name="w1",
        workflow=Workflow(name="wf", steps=[WorkflowStep(name="slow", command="sleep 4")]),
        worktree=str(worktree),
    ))
    executor = WorkflowExecutor(registry, config, CheckpointRecorder(registry))
    registry.executor = executor

    loop = asyncio.get_running_loop()
    started = loop.time()
    outcome = await executor.run("w1")

    assert outcome is ExecutionOutcome.STOPPED
    assert loop.time() - started < 2.0
    assert registry.get("w1").current_step == 0
