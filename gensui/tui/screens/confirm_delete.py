"""Delete worker confirmation modal.

Returns "delete" to remove the worker and keep its worktree,
"delete-worktree" to remove both, or None when cancelled.
"""
from __future__ import annotations

from rich.markup import escape
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Label, Static


class ConfirmDeleteScreen(ModalScreen[str | None]):
    """Modal confirmation dialog before deleting a worker."""

    DEFAULT_CSS = """
    ConfirmDeleteScreen {
        align: center middle;
    }
    #delete-dialog {
        width: 64;
        height: auto;
        border: thick $error;
        background: $surface;
        padding: 1 2;
    }
    #delete-dialog Button {
        width: 100%;
        margin-top: 1;
    }
    """

    BINDINGS = [
        ("escape", "cancel", "Cancel"),
        ("y", "confirm", "Delete"),
        ("w", "confirm_worktree", "Delete + worktree"),
    ]

    def __init__(self, worker_name: str, status: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.worker_name = worker_name
        self.worker_status = status

    def compose(self) -> ComposeResult:
        with Vertical(id="delete-dialog"):
            yield Label("Delete worker?")
            yield Static(
                f"[bold]{escape(self.worker_name)}[/bold]\n"
                f"Status: [yellow]{self.worker_status}[/yellow]",
                id="delete-details",
                markup=True,
            )
            yield Static(
                "[dim]A running step is cancelled. The worktree is kept "
                "unless you choose to remove it.[/dim]",
                markup=True,
            )
            yield Button("[y] Delete", id="btn-delete", variant="error")
            yield Button("[w] Delete and remove worktree", id="btn-delete-worktree", variant="warning")
            yield Button("[Esc] Cancel", id="btn-delete-cancel")

    def on_mount(self) -> None:
        self.query_one("#btn-delete-cancel", Button).focus()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "btn-delete":
            self.dismiss("delete")
        elif event.button.id == "btn-delete-worktree":
            self.dismiss("delete-worktree")
        else:
            self.dismiss(None)

    def action_cancel(self) -> None:
        self.dismiss(None)

    def action_confirm(self) -> None:
        self.dismiss("delete")

    def action_confirm_worktree(self) -> None:
        self.dismiss("delete-worktree")
