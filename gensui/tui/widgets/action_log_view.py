"""Action log panel — the operator-visible history of engine actions."""

from __future__ import annotations

from rich.text import Text
from textual.widgets import RichLog

from gensui.engine.action_log import ACTION_LOG_CAPACITY, ActionLogEntry

CATEGORY_STYLES = {
    "error": "red",
    "warning": "yellow",
    "step": "cyan",
    "worker": "white",
    "system": "dim",
}


class ActionLogView(RichLog):
    """Bounded log mirroring the engine's action-log ring buffer."""

    def __init__(self, **kwargs) -> None:
        super().__init__(
            auto_scroll=True,
            wrap=True,
            markup=False,
            highlight=False,
            max_lines=ACTION_LOG_CAPACITY,
            **kwargs,
        )

    def add_entry(
        self,
        message: str,
        timestamp: str = "",
        worker: str | None = None,
        category: str = "system",
    ) -> None:
        line = Text()
        if timestamp:
            line.append(timestamp[11:19] + " ", style="dim")
        if worker:
            line.append(f"[{worker}] ", style="bold")
        line.append(message, style=CATEGORY_STYLES.get(category, ""))
        self.write(line)

    def reset(self, entries: list[ActionLogEntry]) -> None:
        self.clear()
        for entry in entries:
            self.add_entry(
                entry.message,
                entry.timestamp.isoformat(),
                entry.worker,
                entry.category,
            )
