"""Session events and per-invocation session history.

A ``SessionHistory`` is one headless agent invocation. Events are appended
in arrival order and never modified; once the history is closed it rejects
further appends.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Union

from gensui.engine.errors import SessionClosedError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── Event variants ──


@dataclass(frozen=True)
class ToolUse:
    kind: ClassVar[str] = "tool_use"
    name: str
    timestamp: datetime
    input: Any = None
    tool_use_id: str | None = None


@dataclass(frozen=True)
class ToolResult:
    kind: ClassVar[str] = "tool_result"
    name: str
    timestamp: datetime
    output: Any = None
    tool_use_id: str | None = None


@dataclass(frozen=True)
class AssistantMessage:
    kind: ClassVar[str] = "assistant"
    text: str
    timestamp: datetime


@dataclass(frozen=True)
class ThinkingBlock:
    kind: ClassVar[str] = "thinking"
    content: str
    timestamp: datetime


@dataclass(frozen=True)
class Result:
    kind: ClassVar[str] = "result"
    text: str
    is_error: bool
    timestamp: datetime


@dataclass(frozen=True)
class Error:
    kind: ClassVar[str] = "error"
    message: str
    timestamp: datetime


SessionEvent = Union[ToolUse, ToolResult, AssistantMessage, ThinkingBlock, Result, Error]

_EVENT_MAP: dict[str, type] = {
    cls.kind: cls
    for cls in (ToolUse, ToolResult, AssistantMessage, ThinkingBlock, Result, Error)
}


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Serialize an event to a JSON-safe dict tagged with its ``type``."""
    data: dict[str, Any] = {"type": event.kind}
    for f in fields(event):
        value = getattr(event, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[f.name] = value
    return data


def event_from_dict(data: dict[str, Any]) -> SessionEvent:
    """Deserialize an event produced by ``event_to_dict``.

    Raises ValueError for an unknown ``type`` and KeyError for a missing
    required field.
    """
    kind = data.get("type")
    cls = _EVENT_MAP.get(kind)
    if cls is None:
        raise ValueError(f"Unknown session event type: {kind!r}")
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    kwargs["timestamp"] = _parse_timestamp(data["timestamp"])
    return cls(**kwargs)


# ── History ──


@dataclass
class SessionHistory:
    prompt: str
    session_id: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    events: list[SessionEvent] = field(default_factory=list)
    total_tool_uses: int = 0
    files_modified: set[str] = field(default_factory=set)
    # tool_use_id -> tool name, for labelling results
    _tool_names: dict[str, str] = field(
        default_factory=dict, repr=False, compare=False,
    )

    @property
    def closed(self) -> bool:
        return self.ended_at is not None

    def snapshot(self) -> SessionHistory:
        """Copy with independent containers. Events are frozen and shared."""
        return replace(
            self,
            events=list(self.events),
            files_modified=set(self.files_modified),
            _tool_names=dict(self._tool_names),
        )

    def record(self, event: SessionEvent, file_path: str | None = None) -> SessionEvent:
        """Append ``event`` and fold it into the running counters.

        The stored event may differ from the argument: its timestamp is
        clamped to the previous event's, and a tool result's name is
        resolved from the matching tool use.
        """
        if self.closed:
            raise SessionClosedError(self.session_id)

        if self.events and event.timestamp < self.events[-1].timestamp:
            event = replace(event, timestamp=self.events[-1].timestamp)

        if isinstance(event, ToolResult) and event.tool_use_id:
            resolved = self._tool_names.get(event.tool_use_id)
            if resolved and event.name in ("", event.tool_use_id):
                event = replace(event, name=resolved)

        self.events.append(event)
        if isinstance(event, ToolUse):
            self.total_tool_uses += 1
            if event.tool_use_id:
                self._tool_names[event.tool_use_id] = event.name
        if file_path:
            self.files_modified.add(file_path)
        return event

    def close(self, ended_at: datetime | None = None) -> bool:
        """Set the end timestamp. Returns False if already closed."""
        if self.closed:
            return False
        ended_at = ended_at or _utcnow()
        floor = self.events[-1].timestamp if self.events else self.started_at
        self.ended_at = max(ended_at, floor)
        return True

    @property
    def outcome_failed(self) -> bool:
        """True when the last Result/Error event reports a failure."""
        for event in reversed(self.events):
            if isinstance(event, Error):
                return True
            if isinstance(event, Result):
                return event.is_error
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "prompt": self.prompt,
            "total_tool_uses": self.total_tool_uses,
            "files_modified": sorted(self.files_modified),
            "events": [event_to_dict(e) for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionHistory:
        events = [event_from_dict(e) for e in data.get("events", [])]
        history = cls(
            prompt=data.get("prompt", ""),
            session_id=data.get("session_id"),
            started_at=_parse_timestamp(data["started_at"]),
            ended_at=(
                _parse_timestamp(data["ended_at"]) if data.get("ended_at") else None
            ),
            events=events,
            total_tool_uses=sum(1 for e in events if isinstance(e, ToolUse)),
            files_modified=set(data.get("files_modified", [])),
        )
        for event in events:
            if isinstance(event, ToolUse) and event.tool_use_id:
                history._tool_names[event.tool_use_id] = event.name
        return history
