"""Main screen — worker table, worker log, and action log."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from textual import work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Header

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import (
    ActionLogCompacted,
    ActionLogged,
    WarningRaised,
    WorkerChanged,
    WorkerEvent,
    WorkerLogLine,
    WorkerRemoved,
    WorkerRenamed,
)
from gensui.engine.errors import GensuiError, WorkerNotFoundError
from gensui.engine.manager import WorkerManager
from gensui.engine.registry import worker_changed_event
from gensui.shared.models.worker import WorkerStatus
from gensui.tui.screens.confirm_delete import ConfirmDeleteScreen
from gensui.tui.screens.help import HelpScreen
from gensui.tui.screens.prompt import PromptScreen
from gensui.tui.screens.worktree_picker import WorktreePickerScreen
from gensui.tui.widgets.action_log_view import ActionLogView
from gensui.tui.widgets.status_bar import StatusBar
from gensui.tui.widgets.worker_log import WorkerLog
from gensui.tui.widgets.worker_table import WorkerTable

logger = logging.getLogger(__name__)

# Errors an operator command can raise; shown as notifications
_COMMAND_ERRORS = (GensuiError, KeyError, ValueError)


class MainScreen(Screen):
    """Primary dashboard."""

    DEFAULT_CSS = """
    #workspace {
        height: 1fr;
    }
    #worker-table {
        width: 3fr;
        height: 1fr;
    }
    #side-pane {
        width: 2fr;
    }
    #worker-log {
        height: 1fr;
        border: round $primary-darken-2;
    }
    #action-log {
        height: 12;
        border: round $secondary-darken-2;
    }
    #status-bar {
        height: 1;
        background: $panel;
    }
    """

    BINDINGS = [
        ("n", "provision", "New"),
        ("f", "free_prompt", "Free prompt"),
        ("t", "attach_worktree", "Attach"),
        ("c", "continue_worker", "Continue"),
        ("p", "toggle_pause", "Pause/Resume"),
        ("r", "restart", "Restart"),
        ("e", "rename", "Rename"),
        ("d", "delete", "Delete"),
        ("w", "cycle_workflow", "Workflow"),
        ("l", "compact_log", "Compact log"),
        ("question_mark", "help", "Help"),
    ]

    def __init__(self, manager: WorkerManager, event_bus: EventBus, **kwargs) -> None:
        super().__init__(**kwargs)
        self.manager = manager
        self.event_bus = event_bus
        self._event_consumer_task: asyncio.Task | None = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="workspace"):
            yield WorkerTable(id="worker-table")
            with Vertical(id="side-pane"):
                yield WorkerLog(id="worker-log")
        yield ActionLogView(id="action-log")
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        # Everything queued so far is already reflected in the registry
        for event in self.event_bus.drain():
            if isinstance(event, WarningRaised):
                self.notify(event.message, severity="warning")
        table = self.query_one("#worker-table", WorkerTable)
        for worker in self.manager.registry.snapshot():
            table.upsert(worker_changed_event(worker))
        self.query_one("#action-log", ActionLogView).reset(
            self.manager.registry.action_log.entries()
        )
        self._refresh_status()
        self._show_selected()
        table.focus()
        self._event_consumer_task = asyncio.create_task(
            self.consume_events(), name="event-consumer",
        )

    def on_unmount(self) -> None:
        if self._event_consumer_task is not None:
            self._event_consumer_task.cancel()
            self._event_consumer_task = None

    # ── Event consumption ──

    async def consume_events(self) -> None:
        async for event in self.event_bus.consume():
            try:
                self.handle_event(event)
            except Exception:
                logger.exception("Failed to render %s", event.event_type)

    def handle_event(self, event: WorkerEvent) -> None:
        table = self.query_one("#worker-table", WorkerTable)
        worker_log = self.query_one("#worker-log", WorkerLog)
        action_log = self.query_one("#action-log", ActionLogView)

        if isinstance(event, WorkerChanged):
            table.upsert(event)
            self._refresh_status()
        elif isinstance(event, WorkerLogLine):
            worker_log.append(event.name, event.line)
        elif isinstance(event, WorkerRemoved):
            table.remove_worker(event.name)
            if worker_log.worker_name == event.name:
                self._show_selected()
            self._refresh_status()
        elif isinstance(event, WorkerRenamed):
            table.rename_worker(event.old_name, event.name)
            if worker_log.worker_name == event.old_name:
                worker_log.worker_name = event.name
        elif isinstance(event, ActionLogged):
            action_log.add_entry(event.message, event.timestamp, event.worker, event.category)
        elif isinstance(event, ActionLogCompacted):
            action_log.reset(self.manager.registry.action_log.entries())
        elif isinstance(event, WarningRaised):
            self.notify(event.message, severity="warning")

    def _refresh_status(self) -> None:
        counts = self.manager.registry.status_counts()
        sb = self.query_one("#status-bar", StatusBar)
        sb.total = sum(counts.values())
        sb.running = counts[WorkerStatus.RUNNING]
        sb.failed = counts[WorkerStatus.FAILED]
        sb.workflow = self.manager.selected_workflow.name

    def _show_selected(self) -> None:
        name = self.query_one("#worker-table", WorkerTable).selected_name
        lines: list[str] = []
        if name is not None:
            try:
                lines = list(self.manager.registry.get(name).logs)
            except WorkerNotFoundError:
                name = None
        self.query_one("#worker-log", WorkerLog).show_worker(name, lines)

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self._show_selected()

    @property
    def selected_worker(self) -> str | None:
        name = self.query_one("#worker-table", WorkerTable).selected_name
        if name is None:
            self.notify("No worker selected", severity="warning")
        return name

    # ── Commands ──

    @work(name="worker-command")
    async def _run_command(self, label: str, coro) -> None:
        try:
            await coro
        except _COMMAND_ERRORS as exc:
            logger.warning("%s failed: %s", label, exc)
            self.notify(f"{label} failed: {exc}", severity="error")
        self._refresh_status()

    def action_provision(self) -> None:
        def _on_issue(issue: str | None) -> None:
            if issue is None:
                return
            self._run_command("Provision", self.manager.provision(issue=issue or None))

        wf = self.manager.selected_workflow.name
        self.app.push_screen(
            PromptScreen(f"New worker ({wf})", placeholder="Issue, e.g. #42 (optional)"),
            _on_issue,
        )

    def action_free_prompt(self) -> None:
        def _on_prompt(prompt: str | None) -> None:
            if not prompt:
                return
            self._run_command("Free prompt", self.manager.provision(free_prompt=prompt))

        self.app.push_screen(
            PromptScreen("New worker from prompt", placeholder="What should the agent do?"),
            _on_prompt,
        )

    @work(name="worktree-list", exclusive=True)
    async def action_attach_worktree(self) -> None:
        try:
            worktrees = await self.manager.list_worktrees()
        except GensuiError as exc:
            logger.warning("Listing worktrees failed: %s", exc)
            self.notify(f"Listing worktrees failed: {exc}", severity="error")
            return
        in_use = {
            Path(w.worktree).resolve(): w.name
            for w in self.manager.registry.snapshot() if w.worktree
        }

        def _on_issue(path: Path, issue: str | None) -> None:
            if issue is None:
                return
            self._run_command(
                "Attach", self.manager.provision(issue=issue or None, worktree=path),
            )

        def _on_pick(path: Path | None) -> None:
            if path is None:
                return
            self.app.push_screen(
                PromptScreen(
                    f"New worker in {path.name}", placeholder="Issue, e.g. #42 (optional)",
                ),
                lambda issue: _on_issue(path, issue),
            )

        self.app.push_screen(WorktreePickerScreen(worktrees, in_use), _on_pick)

    def action_continue_worker(self) -> None:
        name = self.selected_worker
        if name is None:
            return

        def _on_prompt(prompt: str | None) -> None:
            if not prompt:
                return
            self._run_command("Continue", self.manager.send_prompt(name, prompt))

        self.app.push_screen(
            PromptScreen(f"Follow-up for {name}", placeholder="Prompt"),
            _on_prompt,
        )

    def action_toggle_pause(self) -> None:
        name = self.selected_worker
        if name is not None:
            self._run_command("Pause/resume", self.manager.toggle_pause(name))

    def action_restart(self) -> None:
        name = self.selected_worker
        if name is not None:
            self._run_command("Restart", self.manager.restart(name))

    def action_rename(self) -> None:
        name = self.selected_worker
        if name is None:
            return

        def _on_name(new_name: str | None) -> None:
            if not new_name or new_name == name:
                return
            self._run_command("Rename", self.manager.rename(name, new_name))

        self.app.push_screen(
            PromptScreen(f"Rename {name}", value=name),
            _on_name,
        )

    def action_delete(self) -> None:
        name = self.selected_worker
        if name is None:
            return
        status = self.manager.registry.status(name).value

        def _on_confirm(result: str | None) -> None:
            if result is None:
                return
            self._run_command(
                "Delete",
                self.manager.delete(name, remove_worktree=result == "delete-worktree"),
            )

        self.app.push_screen(ConfirmDeleteScreen(name, status), _on_confirm)

    def action_cycle_workflow(self) -> None:
        self._run_command("Select workflow", self.manager.cycle_workflow())

    def action_compact_log(self) -> None:
        self._run_command("Compact log", self.manager.compact_action_log())

    def action_help(self) -> None:
        self.app.push_screen(HelpScreen())
