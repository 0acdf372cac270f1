"""Worker table — one row per worker with status and progress."""

from __future__ import annotations

from rich.text import Text
from textual.coordinate import Coordinate
from textual.widgets import DataTable

from gensui.adapters.events import WorkerChanged

STATUS_STYLES = {
    "idle": "green",
    "running": "yellow",
    "paused": "cyan",
    "failed": "bold red",
}

_COLUMNS = (
    ("name", "Worker"),
    ("status", "Status"),
    ("workflow", "Workflow"),
    ("step", "Step"),
    ("tools", "Tools"),
    ("files", "Files"),
    ("issue", "Issue"),
    ("last_event", "Last event"),
)


def _step_label(event: WorkerChanged) -> str:
    if event.total_steps == 0:
        return "-"
    shown = min(event.current_step + 1, event.total_steps)
    label = f"{shown}/{event.total_steps}"
    if event.current_step_name and event.status == "running":
        label += f" {event.current_step_name}"
    return label


class WorkerTable(DataTable):
    """Live worker list keyed by worker name."""

    def __init__(self, **kwargs) -> None:
        super().__init__(cursor_type="row", zebra_stripes=True, **kwargs)
        self._rows: dict[str, WorkerChanged] = {}

    def on_mount(self) -> None:
        self._ensure_columns()

    def _ensure_columns(self) -> None:
        if not self.columns:
            for key, label in _COLUMNS:
                self.add_column(label, key=key)

    def _cells(self, event: WorkerChanged) -> list:
        status = Text(event.status, style=STATUS_STYLES.get(event.status, ""))
        last = event.last_event if len(event.last_event) <= 48 else event.last_event[:45] + "..."
        return [
            event.name,
            status,
            event.workflow,
            _step_label(event),
            str(event.tool_uses),
            str(len(event.files_modified)),
            event.issue or "",
            last,
        ]

    def upsert(self, event: WorkerChanged) -> None:
        self._ensure_columns()
        cells = self._cells(event)
        if event.name in self._rows:
            for (key, _), value in zip(_COLUMNS, cells):
                self.update_cell(event.name, key, value)
        else:
            self.add_row(*cells, key=event.name)
        self._rows[event.name] = event

    def remove_worker(self, name: str) -> None:
        if self._rows.pop(name, None) is not None:
            self.remove_row(name)

    def rename_worker(self, old_name: str, name: str) -> None:
        event = self._rows.get(old_name)
        if event is None:
            return
        self.remove_worker(old_name)
        event.name = name
        self.upsert(event)

    @property
    def selected_name(self) -> str | None:
        if self.row_count == 0:
            return None
        row = min(self.cursor_row, self.row_count - 1)
        return self.coordinate_to_cell_key(Coordinate(row, 0)).row_key.value
