"""Operator-facing action log: a fixed-capacity ring buffer."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

ACTION_LOG_CAPACITY = 64
COMPACT_KEEP = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActionLogEntry:
    message: str
    timestamp: datetime = field(default_factory=_utcnow)
    worker: str | None = None
    # "step", "worker", "warning", "error", or "system"
    category: str = "system"

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "worker": self.worker,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionLogEntry:
        ts = datetime.fromisoformat(data["timestamp"])
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return cls(
            message=str(data["message"]),
            timestamp=ts,
            worker=data.get("worker"),
            category=data.get("category", "system"),
        )

    def format(self) -> str:
        stamp = self.timestamp.astimezone().strftime("%H:%M:%S")
        if self.worker:
            return f"{stamp} [{self.worker}] {self.message}"
        return f"{stamp} {self.message}"


class ActionLog:
    """Bounded log; appending past capacity evicts the oldest entry."""

    def __init__(self, capacity: int = ACTION_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: deque[ActionLogEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ActionLogEntry]:
        return iter(list(self._entries))

    def append(
        self,
        message: str,
        *,
        worker: str | None = None,
        category: str = "system",
    ) -> ActionLogEntry:
        entry = ActionLogEntry(message=message, worker=worker, category=category)
        self._entries.append(entry)
        return entry

    def entries(self) -> list[ActionLogEntry]:
        return list(self._entries)

    def compact(self, keep: int = COMPACT_KEEP) -> int:
        """Drop all but the ``keep`` most recent entries. Returns the number removed."""
        removed = max(0, len(self._entries) - keep)
        for _ in range(removed):
            self._entries.popleft()
        return removed

    def restore(self, entries: list[ActionLogEntry]) -> None:
        self._entries.clear()
        # deque(maxlen) keeps only the newest ``capacity`` entries
        self._entries.extend(entries)
