"""Gensui TUI — Textual application class."""

from __future__ import annotations

import logging

from textual.app import App

from gensui.adapters.event_bus import EventBus
from gensui.engine.manager import WorkerManager
from gensui.tui.screens.main import MainScreen

logger = logging.getLogger(__name__)


class GensuiApp(App):
    """Terminal dashboard for supervising coding-agent workers."""

    TITLE = "Gensui"
    SUB_TITLE = "Worker Dashboard"

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("ctrl+q", "quit", "Quit"),
    ]

    def __init__(
        self,
        manager: WorkerManager,
        event_bus: EventBus,
        auto_resume: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.manager = manager
        self.event_bus = event_bus
        self._auto_resume = auto_resume

    async def on_mount(self) -> None:
        await self.manager.restore()
        self.push_screen(MainScreen(self.manager, self.event_bus))
        if self._auto_resume:
            resumed = await self.manager.resume_interrupted()
            if resumed:
                self.notify(f"Resumed {len(resumed)} interrupted worker(s)")
        self.sub_title = f"Worker Dashboard · {self.manager.selected_workflow.name}"

    async def action_quit(self) -> None:
        """Stop worker tasks and checkpoint before exiting."""
        failures = await self.manager.shutdown()
        for failure in failures:
            logger.error("Final checkpoint failed: %s", failure)
        self.event_bus.close()
        await super().action_quit()
