"""Worker registry: the single owner of all worker state.

Every mutation (status changes, session event appends, log lines, action
log entries) goes through one asyncio.Lock, so concurrent sources such as
subprocess readers and operator commands never interleave partial updates
to the same worker. Readers receive copies that share only closed
session histories.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from datetime import datetime
from typing import Callable, TypeVar

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import (
    ActionLogCompacted,
    ActionLogged,
    WorkerChanged,
    WorkerEvent,
    WorkerLogLine,
    WorkerRemoved,
    WorkerRenamed,
)
from gensui.shared.models.session import SessionEvent
from gensui.shared.models.worker import Worker, WorkerStatus

from .action_log import ActionLog, ActionLogEntry
from .errors import WorkerConflictError, WorkerNotFoundError
from .lifecycle import validate_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")


def worker_changed_event(worker: Worker) -> WorkerChanged:
    session = worker.sessions[-1] if worker.sessions else None
    return WorkerChanged(
        name=worker.name,
        status=worker.status.value,
        workflow=worker.workflow_name,
        current_step=worker.current_step,
        total_steps=worker.total_steps,
        current_step_name=worker.current_step_name,
        issue=worker.issue,
        branch=worker.branch,
        worktree=worker.worktree,
        session_id=worker.session_id,
        tool_uses=session.total_tool_uses if session else 0,
        files_modified=sorted(worker.files_modified),
        last_event=worker.last_event,
    )


class WorkerRegistry:
    """Mapping of worker name to Worker with a serialized mutation path."""

    def __init__(
        self,
        action_log: ActionLog | None = None,
        event_bus: EventBus | None = None,
        max_sessions: int | None = None,
        max_log_lines: int | None = None,
    ) -> None:
        self._workers: dict[str, Worker] = {}
        self._lock = asyncio.Lock()
        self.action_log = action_log or ActionLog()
        self._bus = event_bus
        self._max_sessions = max_sessions
        self._max_log_lines = max_log_lines
        self._next_id = 1

    # ── Reads ──

    def __contains__(self, name: object) -> bool:
        return name in self._workers

    def __len__(self) -> int:
        return len(self._workers)

    @property
    def next_id(self) -> int:
        return self._next_id

    def names(self) -> list[str]:
        return sorted(self._workers, key=lambda n: self._workers[n].id)

    def get(self, name: str) -> Worker:
        """Independent copy of the named worker (see Worker.snapshot)."""
        return self._require(name).snapshot()

    def snapshot(self) -> list[Worker]:
        return [self._workers[n].snapshot() for n in self.names()]

    def status_counts(self) -> Counter[WorkerStatus]:
        """Number of workers per status, without copying any worker."""
        return Counter(w.status for w in self._workers.values())

    def status(self, name: str) -> WorkerStatus:
        return self._require(name).status

    def is_running(self, name: str) -> bool:
        worker = self._workers.get(name)
        return worker is not None and worker.status is WorkerStatus.RUNNING

    def _require(self, name: str) -> Worker:
        worker = self._workers.get(name)
        if worker is None:
            raise WorkerNotFoundError(name)
        return worker

    # ── Event fan-out ──

    async def _emit(self, *events: WorkerEvent) -> None:
        if self._bus is None:
            return
        for event in events:
            await self._bus.emit(event)

    def _append_action(
        self, message: str, worker: str | None, category: str,
    ) -> tuple[ActionLogEntry, ActionLogged]:
        entry = self.action_log.append(message, worker=worker, category=category)
        return entry, ActionLogged(
            message=entry.message,
            worker=entry.worker,
            category=entry.category,
            timestamp=entry.timestamp.isoformat(),
        )

    # ── Mutations ──

    async def allocate_id(self) -> int:
        async with self._lock:
            worker_id = self._next_id
            self._next_id += 1
            return worker_id

    async def add(self, worker: Worker) -> None:
        async with self._lock:
            if worker.name in self._workers:
                raise WorkerConflictError(worker.name)
            if self._max_log_lines and worker.logs.maxlen != self._max_log_lines:
                worker.logs = deque(worker.logs, maxlen=self._max_log_lines)
            self._workers[worker.name] = worker
            self._next_id = max(self._next_id, worker.id + 1)
            event = worker_changed_event(worker)
        logger.info("Registered worker %s (id=%d)", worker.name, worker.id)
        await self._emit(event)

    async def remove(self, name: str) -> Worker:
        async with self._lock:
            worker = self._workers.pop(name, None)
            if worker is None:
                raise WorkerNotFoundError(name)
        logger.info("Removed worker %s", name)
        await self._emit(WorkerRemoved(name=name))
        return worker

    async def rename(self, old_name: str, new_name: str) -> None:
        async with self._lock:
            worker = self._require(old_name)
            if new_name == old_name:
                return
            if new_name in self._workers:
                raise WorkerConflictError(new_name)
            if worker.status is WorkerStatus.RUNNING:
                raise WorkerConflictError(old_name, "is running; pause it before renaming")
            del self._workers[old_name]
            worker.name = new_name
            worker.touch()
            self._workers[new_name] = worker
        await self._emit(WorkerRenamed(old_name=old_name, name=new_name))

    async def transition(
        self,
        name: str,
        target: WorkerStatus,
        *,
        expected: WorkerStatus | None = None,
        reason: str | None = None,
        log_message: str | None = None,
        category: str = "worker",
    ) -> WorkerStatus | None:
        """Move a worker to ``target``.

        Raises InvalidTransitionError for a disallowed edge. When
        ``expected`` is given and the worker is in another status, nothing
        changes and None is returned.
        """
        events: list[WorkerEvent] = []
        async with self._lock:
            worker = self._require(name)
            if expected is not None and worker.status is not expected:
                return None
            validate_transition(worker.status, target)
            previous = worker.set_status(target)
            if reason:
                worker.last_event = reason
                worker.append_log(reason)
            if log_message:
                _, logged = self._append_action(log_message, name, category)
                events.append(logged)
            events.insert(0, worker_changed_event(worker))
        logger.info("Worker %s: %s -> %s", name, previous.value, target.value)
        await self._emit(*events)
        return previous

    async def update(
        self,
        name: str,
        fn: Callable[[Worker], T],
        *,
        log_message: str | None = None,
        category: str = "worker",
    ) -> T:
        """Apply ``fn`` to the live worker under the lock and return its result.

        ``fn`` must not change ``status``; use transition() for that.
        """
        events: list[WorkerEvent] = []
        async with self._lock:
            worker = self._require(name)
            status = worker.status
            result = fn(worker)
            if worker.status is not status:
                worker.status = status
                raise RuntimeError("status changes must go through transition()")
            worker.touch()
            events.append(worker_changed_event(worker))
            if log_message:
                _, logged = self._append_action(log_message, name, category)
                events.append(logged)
        await self._emit(*events)
        return result

    async def append_log(self, name: str, line: str) -> None:
        async with self._lock:
            self._require(name).append_log(line)
        await self._emit(WorkerLogLine(name=name, line=line))

    async def begin_session(self, name: str, prompt: str) -> None:
        async with self._lock:
            worker = self._require(name)
            worker.begin_session(prompt, max_sessions=self._max_sessions)
            event = worker_changed_event(worker)
        await self._emit(event)

    async def record_event(
        self, name: str, event: SessionEvent, file_path: str | None = None,
    ) -> SessionEvent:
        """Append a session event to the worker's active session.

        Raises SessionClosedError when no session is open.
        """
        async with self._lock:
            worker = self._require(name)
            known = file_path in worker.files_modified if file_path else True
            stored = worker.record_event(event, file_path)
            changed = worker_changed_event(worker) if not known else None
        if changed is not None:
            await self._emit(changed)
        return stored

    async def capture_session_id(self, name: str, session_id: str) -> bool:
        async with self._lock:
            changed = self._require(name).capture_session_id(session_id)
        return changed

    async def end_session(self, name: str, ended_at: datetime | None = None) -> bool:
        async with self._lock:
            worker = self._workers.get(name)
            if worker is None:
                return False
            ended = worker.end_session(ended_at)
            event = worker_changed_event(worker)
        await self._emit(event)
        return ended

    async def log_action(
        self, message: str, *, worker: str | None = None, category: str = "system",
    ) -> ActionLogEntry:
        async with self._lock:
            entry, logged = self._append_action(message, worker, category)
        await self._emit(logged)
        return entry

    async def compact_action_log(self, keep: int = 4) -> int:
        async with self._lock:
            removed = self.action_log.compact(keep)
            remaining = len(self.action_log)
        await self._emit(ActionLogCompacted(remaining=remaining))
        return removed

    async def restore(
        self,
        workers: list[Worker],
        action_log: list[ActionLogEntry] | None = None,
        next_id: int | None = None,
    ) -> None:
        """Replace the registry contents with checkpointed state."""
        async with self._lock:
            self._workers = {}
            for worker in workers:
                if self._max_log_lines and worker.logs.maxlen != self._max_log_lines:
                    worker.logs = deque(worker.logs, maxlen=self._max_log_lines)
                self._workers[worker.name] = worker
            highest = max((w.id for w in workers), default=0)
            self._next_id = max(next_id or 1, highest + 1)
            if action_log is not None:
                self.action_log.restore(action_log)
            events = [worker_changed_event(w) for w in workers]
        await self._emit(*events)
