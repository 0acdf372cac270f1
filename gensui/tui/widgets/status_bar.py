"""Status bar — bottom bar with worker counts and the selected workflow."""

from __future__ import annotations

from rich.text import Text
from textual.reactive import reactive
from textual.widget import Widget


class StatusBar(Widget):
    """Single-line summary of the fleet."""

    workflow: reactive[str] = reactive("default")
    running: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)

    def render(self) -> Text:
        bar = Text()
        bar.append(f" {self.total} worker(s) ", style="bold")
        bar.append(" │ ", style="dim")
        bar.append(f"{self.running} running", style="yellow")
        bar.append(" │ ", style="dim")
        bar.append(f"{self.failed} failed", style="red" if self.failed else "dim")
        bar.append(" │ ", style="dim")
        bar.append("workflow: ", style="dim")
        bar.append(self.workflow, style="cyan")
        return bar
