"""Checkpoint persistence for the worker registry.

Layout under the state directory::

    workers/<name>.json    full worker state, one file per worker
    manager.json           next worker id and the selected workflow
    action_log.jsonl       the most recent 64 action-log entries

Every file is replaced atomically (write temp, fsync, rename), so a crash
mid-write leaves the previous checkpoint intact. Loading is tolerant: a
missing, truncated, or malformed file is skipped with a warning instead of
aborting startup.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gensui.engine.action_log import ACTION_LOG_CAPACITY, ActionLogEntry
from gensui.engine.errors import PersistenceFailure
from gensui.engine.workflow import workflow_from_dict, workflow_to_dict
from gensui.shared.models.session import SessionHistory
from gensui.shared.models.worker import DEFAULT_LOG_LINES, Worker, WorkerStatus
from gensui.shared.services.durable_write import (
    atomic_write_json,
    atomic_write_jsonl,
    remove_file,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_LOAD_ERRORS = (
    OSError, json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError,
)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def worker_to_dict(worker: Worker) -> dict[str, Any]:
    return {
        "version": SCHEMA_VERSION,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "id": worker.id,
        "name": worker.name,
        "status": worker.status.value,
        "issue": worker.issue,
        "branch": worker.branch,
        "worktree": worker.worktree,
        "owns_worktree": worker.owns_worktree,
        "agent": worker.agent,
        "workflow": workflow_to_dict(worker.workflow),
        "current_step": worker.current_step,
        "current_step_name": worker.current_step_name,
        "session_id": worker.session_id,
        "files_modified": sorted(worker.files_modified),
        "last_event": worker.last_event,
        "logs": list(worker.logs),
        "transitions": [[old.value, new.value] for old, new in worker.transitions],
        "created_at": worker.created_at.isoformat(),
        "updated_at": worker.updated_at.isoformat(),
        "sessions": [s.to_dict() for s in worker.sessions],
    }


def dict_to_worker(data: dict[str, Any], max_log_lines: int = DEFAULT_LOG_LINES) -> Worker:
    """Rebuild a Worker. Raises KeyError/ValueError/TypeError on bad input."""
    if not isinstance(data, dict):
        raise TypeError("worker record is not an object")
    version = data.get("version")
    if version != SCHEMA_VERSION:
        raise ValueError(f"unsupported schema version {version!r}")
    workflow = workflow_from_dict(data["workflow"])
    current_step = int(data["current_step"])
    if not 0 <= current_step <= len(workflow.steps):
        raise ValueError(f"step index {current_step} out of range")
    return Worker(
        id=int(data["id"]),
        name=str(data["name"]),
        workflow=workflow,
        status=WorkerStatus(data["status"]),
        issue=data.get("issue"),
        branch=data.get("branch", ""),
        worktree=data.get("worktree", ""),
        owns_worktree=bool(data.get("owns_worktree", True)),
        agent=data.get("agent", "claude"),
        current_step=current_step,
        current_step_name=data.get("current_step_name"),
        session_id=data.get("session_id"),
        sessions=[SessionHistory.from_dict(s) for s in data.get("sessions", [])],
        files_modified=set(data.get("files_modified", [])),
        logs=deque(data.get("logs", []), maxlen=max_log_lines),
        last_event=data.get("last_event", ""),
        transitions=[
            (WorkerStatus(old), WorkerStatus(new)) for old, new in data.get("transitions", [])
        ],
        created_at=_parse_timestamp(data.get("created_at")),
        updated_at=_parse_timestamp(data.get("updated_at")),
    )


@dataclass
class RestoreResult:
    workers: list[Worker] = field(default_factory=list)
    action_log: list[ActionLogEntry] = field(default_factory=list)
    next_id: int = 1
    default_workflow: str | None = None
    warnings: list[str] = field(default_factory=list)


class PersistenceManager:
    """Reads and writes registry checkpoints under ``state_dir``."""

    def __init__(self, state_dir: Path, max_log_lines: int = DEFAULT_LOG_LINES) -> None:
        self._dir = Path(state_dir)
        self._max_log_lines = max_log_lines

    @property
    def state_dir(self) -> Path:
        return self._dir

    @property
    def workers_dir(self) -> Path:
        return self._dir / "workers"

    @property
    def manager_path(self) -> Path:
        return self._dir / "manager.json"

    @property
    def action_log_path(self) -> Path:
        return self._dir / "action_log.jsonl"

    def worker_path(self, name: str) -> Path:
        return self.workers_dir / f"{name}.json"

    # ── Writes ──

    def save_worker(self, worker: Worker) -> Path:
        path = self.worker_path(worker.name)
        try:
            atomic_write_json(path, worker_to_dict(worker))
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(str(path), str(exc)) from exc
        logger.debug("Worker %s saved to %s", worker.name, path)
        return path

    def delete_worker(self, name: str) -> bool:
        path = self.worker_path(name)
        try:
            removed = remove_file(path)
        except OSError as exc:
            raise PersistenceFailure(str(path), str(exc)) from exc
        if removed:
            logger.info("Deleted worker state %s", path)
        return removed

    def rename_worker(self, worker: Worker, old_name: str) -> Path:
        """Write the worker under its new name, then drop the old file."""
        path = self.save_worker(worker)
        if old_name != worker.name:
            self.delete_worker(old_name)
        return path

    def save_action_log(self, entries: list[ActionLogEntry]) -> None:
        path = self.action_log_path
        records = [e.to_dict() for e in entries[-ACTION_LOG_CAPACITY:]]
        try:
            atomic_write_jsonl(path, records)
        except OSError as exc:
            raise PersistenceFailure(str(path), str(exc)) from exc

    def save_manager_state(self, next_id: int, default_workflow: str | None) -> None:
        path = self.manager_path
        try:
            atomic_write_json(path, {
                "version": SCHEMA_VERSION,
                "next_id": next_id,
                "default_workflow": default_workflow,
            })
        except OSError as exc:
            raise PersistenceFailure(str(path), str(exc)) from exc

    def save_all(
        self,
        workers: list[Worker],
        action_log: list[ActionLogEntry],
        next_id: int,
        default_workflow: str | None = None,
    ) -> list[PersistenceFailure]:
        """Write every file; returns the failures rather than stopping at the first."""
        failures: list[PersistenceFailure] = []
        for worker in workers:
            try:
                self.save_worker(worker)
            except PersistenceFailure as exc:
                failures.append(exc)
        for write in (
            lambda: self.save_action_log(action_log),
            lambda: self.save_manager_state(next_id, default_workflow),
        ):
            try:
                write()
            except PersistenceFailure as exc:
                failures.append(exc)
        for failure in failures:
            logger.error("Checkpoint failed: %s", failure)
        if not failures:
            logger.info("Checkpointed %d worker(s) to %s", len(workers), self._dir)
        return failures

    # ── Reads ──

    def _warn(self, result: RestoreResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)

    def load(self) -> RestoreResult:
        """Load every checkpoint file. Never raises for bad or missing data."""
        result = RestoreResult()
        if not self._dir.exists():
            logger.info("No state directory at %s; starting empty", self._dir)
            return result

        self._load_manager_state(result)

        if self.workers_dir.is_dir():
            for path in sorted(self.workers_dir.glob("*.json")):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                    worker = dict_to_worker(data, self._max_log_lines)
                except _LOAD_ERRORS as exc:
                    self._warn(result, f"Skipping unreadable worker state {path.name}: {exc}")
                    continue
                if worker.name != path.stem:
                    self._warn(
                        result,
                        f"Worker state {path.name} names '{worker.name}'; using file name",
                    )
                    worker.name = path.stem
                result.workers.append(worker)

        result.workers.sort(key=lambda w: w.id)
        highest = max((w.id for w in result.workers), default=0)
        result.next_id = max(result.next_id, highest + 1)

        self._load_action_log(result)
        logger.info(
            "Restored %d worker(s) and %d action log entries from %s",
            len(result.workers), len(result.action_log), self._dir,
        )
        return result

    def _load_manager_state(self, result: RestoreResult) -> None:
        path = self.manager_path
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            result.next_id = max(1, int(data["next_id"]))
            result.default_workflow = data.get("default_workflow")
        except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
            self._warn(result, f"Ignoring unreadable manager state {path.name}: {exc}")

    def _load_action_log(self, result: RestoreResult) -> None:
        path = self.action_log_path
        if not path.exists():
            return
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            self._warn(result, f"Ignoring unreadable action log: {exc}")
            return
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                result.action_log.append(ActionLogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as exc:
                self._warn(result, f"Skipping action log line {lineno}: {exc}")
        result.action_log = result.action_log[-ACTION_LOG_CAPACITY:]
