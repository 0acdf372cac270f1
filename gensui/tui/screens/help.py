"""Help modal listing the dashboard key bindings."""

from __future__ import annotations

from textual.app import ComposeResult
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Static


class HelpScreen(ModalScreen[None]):
    """Display keyboard shortcuts."""

    DEFAULT_CSS = """
    HelpScreen {
        align: center middle;
    }
    #help-dialog {
        width: 60;
        height: auto;
        border: thick $primary;
        background: $surface;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("escape", "close", "Close"),
        ("question_mark", "close", "Close"),
    ]

    def compose(self) -> ComposeResult:
        with Vertical(id="help-dialog"):
            yield Static("[bold $primary]Gensui Help[/bold $primary]", markup=True)
            yield Static(
                "[bold]Workers[/bold]\n"
                "- `n`: new worker (asks for an issue)\n"
                "- `f`: new worker from a free prompt\n"
                "- `t`: new worker in an existing worktree\n"
                "- `c`: send a follow-up prompt to the selected worker\n"
                "- `p`: pause / resume the selected worker\n"
                "- `r`: restart the selected worker from its first step\n"
                "- `e`: rename the selected worker\n"
                "- `d`: delete the selected worker\n\n"
                "[bold]Dashboard[/bold]\n"
                "- `w`: cycle the workflow used for new workers\n"
                "- `l`: compact the action log\n"
                "- `?`: this help\n"
                "- `q`: quit (running workers resume on next start)",
                id="help-body",
                markup=True,
            )
            yield Button("Close", id="help-close", variant="primary")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "help-close":
            self.dismiss(None)

    def action_close(self) -> None:
        self.dismiss(None)
