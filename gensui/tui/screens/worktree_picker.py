"""Worktree picker modal — attach a new worker to an existing worktree.

Returns the chosen worktree path, or None when cancelled.
"""
from __future__ import annotations

from pathlib import Path

from rich.markup import escape
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import Button, Static

from gensui.engine.worktree import ExistingWorktree


class WorktreePickerScreen(ModalScreen[Path | None]):
    """List existing worktrees with one Attach button each."""

    DEFAULT_CSS = """
    WorktreePickerScreen {
        align: center middle;
    }
    #worktree-dialog {
        width: 80;
        height: auto;
        max-height: 80%;
        border: thick $primary;
        background: $surface;
        padding: 1 2;
    }
    #worktree-list {
        height: auto;
        max-height: 20;
    }
    .worktree-entry {
        height: auto;
        margin-bottom: 1;
    }
    """

    BINDINGS = [
        ("escape", "cancel", "Cancel"),
    ]

    def __init__(
        self,
        worktrees: list[ExistingWorktree],
        in_use: dict[Path, str],
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._worktrees = worktrees
        self._in_use = in_use

    def compose(self) -> ComposeResult:
        with Vertical(id="worktree-dialog"):
            yield Static("[bold $primary]Attach to worktree[/bold $primary]", markup=True)
            if not self._worktrees:
                yield Static("[dim]No worktrees found.[/dim]", id="worktree-empty", markup=True)
            else:
                with VerticalScroll(id="worktree-list"):
                    for idx, wt in enumerate(self._worktrees):
                        yield from self._entry(idx, wt)
            with Horizontal():
                yield Button("Close", id="btn-wt-close")

    def _entry(self, idx: int, wt: ExistingWorktree) -> ComposeResult:
        owner = self._in_use.get(wt.path.resolve())
        markers = ""
        if wt.locked:
            markers += " [yellow]locked[/yellow]"
        if owner:
            markers += f" [dim]used by {escape(owner)}[/dim]"
        with Vertical(classes="worktree-entry"):
            yield Static(f"[bold]{escape(wt.label)}[/bold]{markers}", markup=True)
            yield Static(f"  [dim]{escape(str(wt.path))}[/dim]", markup=True)
            if owner is None and not wt.bare:
                yield Button("Attach", variant="primary", id=f"btn-wt-attach-{idx}")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        btn_id = event.button.id or ""
        if btn_id.startswith("btn-wt-attach-"):
            idx = int(btn_id.removeprefix("btn-wt-attach-"))
            if 0 <= idx < len(self._worktrees):
                self.dismiss(self._worktrees[idx].path)
        else:
            self.dismiss(None)

    def action_cancel(self) -> None:
        self.dismiss(None)
