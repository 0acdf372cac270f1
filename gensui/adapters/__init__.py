"""Adapters package - Bridge between the engine and its frontends.

Holds the event bus and the typed events the registry publishes to the
TUI and the headless printer.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "WorkerEvent",
    "dict_to_event",
    "event_to_dict",
]

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import WorkerEvent, dict_to_event, event_to_dict
