"""Worker model: one issue, one worktree, one workflow run."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from gensui.engine.errors import SessionClosedError
from gensui.engine.workflow import Workflow
from gensui.shared.models.session import SessionEvent, SessionHistory

DEFAULT_LOG_LINES = 500
MAX_TRANSITIONS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass
class Worker:
    id: int
    name: str
    workflow: Workflow
    status: WorkerStatus = WorkerStatus.RUNNING
    issue: str | None = None
    branch: str = ""
    worktree: str = ""
    # False when the worktree was attached rather than created by gensui
    owns_worktree: bool = True
    agent: str = "claude"
    # Index of the next unexecuted step
    current_step: int = 0
    current_step_name: str | None = None
    session_id: str | None = None
    sessions: list[SessionHistory] = field(default_factory=list)
    files_modified: set[str] = field(default_factory=set)
    logs: deque[str] = field(default_factory=lambda: deque(maxlen=DEFAULT_LOG_LINES))
    last_event: str = ""
    transitions: list[tuple[WorkerStatus, WorkerStatus]] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> Worker:
        """Copy for readers outside the registry.

        Closed session histories never change again, so they are shared
        with the copy. The open session and every container are copied.
        """
        return replace(
            self,
            workflow=replace(self.workflow, steps=list(self.workflow.steps)),
            sessions=[s if s.closed else s.snapshot() for s in self.sessions],
            files_modified=set(self.files_modified),
            logs=deque(self.logs, maxlen=self.logs.maxlen),
            transitions=list(self.transitions),
        )

    @property
    def workflow_name(self) -> str:
        return self.workflow.name

    @property
    def total_steps(self) -> int:
        return len(self.workflow.steps)

    @property
    def active_session(self) -> SessionHistory | None:
        if self.sessions and not self.sessions[-1].closed:
            return self.sessions[-1]
        return None

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def set_status(self, status: WorkerStatus) -> WorkerStatus:
        previous = self.status
        self.status = status
        self.transitions.append((previous, status))
        if len(self.transitions) > MAX_TRANSITIONS:
            del self.transitions[: len(self.transitions) - MAX_TRANSITIONS]
        self.touch()
        return previous

    def append_log(self, line: str) -> None:
        self.logs.append(line)
        self.touch()

    def begin_session(
        self,
        prompt: str,
        started_at: datetime | None = None,
        max_sessions: int | None = None,
    ) -> SessionHistory:
        """Open a new session history, closing any stale open one first."""
        stale = self.active_session
        if stale is not None:
            stale.close()
        history = SessionHistory(
            prompt=prompt,
            session_id=self.session_id,
            started_at=started_at or _utcnow(),
        )
        self.sessions.append(history)
        if max_sessions and len(self.sessions) > max_sessions:
            del self.sessions[: len(self.sessions) - max_sessions]
        self.touch()
        return history

    def record_event(self, event: SessionEvent, file_path: str | None = None) -> SessionEvent:
        session = self.active_session
        if session is None:
            raise SessionClosedError(self.session_id)
        stored = session.record(event, file_path)
        if file_path:
            self.files_modified.add(file_path)
        self.touch()
        return stored

    def capture_session_id(self, session_id: str) -> bool:
        """Store a newly reported session id. Returns True if it changed."""
        session = self.active_session
        if session is not None and session.session_id != session_id:
            session.session_id = session_id
        if self.session_id == session_id:
            return False
        self.session_id = session_id
        self.touch()
        return True

    def end_session(self, ended_at: datetime | None = None) -> bool:
        session = self.active_session
        if session is None:
            return False
        session.close(ended_at)
        self.touch()
        return True
