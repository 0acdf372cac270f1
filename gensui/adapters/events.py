"""Event types emitted by the worker registry.

Each registry mutation produces one of these typed dataclasses for the
UI (or the headless JSON printer) to consume.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class WorkerEvent:
    """Base event from the orchestration engine."""
    event_type: str = ""


@dataclass
class WorkerChanged(WorkerEvent):
    event_type: str = "worker_changed"
    name: str = ""
    status: str = ""
    workflow: str = ""
    current_step: int = 0
    total_steps: int = 0
    current_step_name: str | None = None
    issue: str | None = None
    branch: str = ""
    worktree: str = ""
    session_id: str | None = None
    tool_uses: int = 0
    files_modified: list[str] = field(default_factory=list)
    last_event: str = ""


@dataclass
class WorkerRemoved(WorkerEvent):
    event_type: str = "worker_removed"
    name: str = ""


@dataclass
class WorkerRenamed(WorkerEvent):
    event_type: str = "worker_renamed"
    old_name: str = ""
    name: str = ""


@dataclass
class WorkerLogLine(WorkerEvent):
    event_type: str = "worker_log_line"
    name: str = ""
    line: str = ""


@dataclass
class ActionLogged(WorkerEvent):
    event_type: str = "action_logged"
    message: str = ""
    worker: str | None = None
    category: str = "system"
    timestamp: str = ""


@dataclass
class ActionLogCompacted(WorkerEvent):
    event_type: str = "action_log_compacted"
    remaining: int = 0


@dataclass
class WarningRaised(WorkerEvent):
    event_type: str = "warning"
    message: str = ""
    worker: str | None = None


_EVENT_MAP: dict[str, type[WorkerEvent]] = {
    "worker_changed": WorkerChanged,
    "worker_removed": WorkerRemoved,
    "worker_renamed": WorkerRenamed,
    "worker_log_line": WorkerLogLine,
    "action_logged": ActionLogged,
    "action_log_compacted": ActionLogCompacted,
    "warning": WarningRaised,
}


def event_to_dict(event: WorkerEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # "event" rather than "event_type" on the wire
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> WorkerEvent:
    """Convert a plain dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, WorkerEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
