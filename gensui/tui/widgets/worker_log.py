"""Worker log — output of the selected worker's steps."""

from __future__ import annotations

from rich.text import Text
from textual.widgets import RichLog


class WorkerLog(RichLog):
    """Shows the log lines of one worker at a time."""

    def __init__(self, **kwargs) -> None:
        super().__init__(
            auto_scroll=True,
            wrap=True,
            markup=False,
            highlight=True,
            max_lines=5000,
            **kwargs,
        )
        self.worker_name: str | None = None

    def show_worker(self, name: str | None, lines: list[str]) -> None:
        self.worker_name = name
        self.clear()
        if name is None:
            self.write(Text("No worker selected", style="dim"))
            return
        self.write(Text(f"── {name} ──", style="bold"))
        for line in lines:
            self.write(line)

    def append(self, name: str, line: str) -> None:
        if name == self.worker_name:
            self.write(line)
