from __future__ import annotations

import asyncio

import pytest

from gensui.adapters.event_bus import EventBus
from gensui.adapters.events import (
    WarningRaised,
    WorkerChanged,
    WorkerLogLine,
    dict_to_event,
    event_to_dict,
)


@pytest.mark.asyncio
async def test_consume_yields_in_order_and_stops_on_close() -> None:
    bus = EventBus()
    await bus.emit(WorkerLogLine(name="w1", line="a"))
    await bus.emit(WorkerLogLine(name="w1", line="b"))

    seen: list[str] = []

    async def _consume() -> None:
        async for event in bus.consume():
            seen.append(event.line)
            if len(seen) == 2:
                bus.close()

    await asyncio.wait_for(_consume(), timeout=5)

    assert seen == ["a", "b"]
    assert bus.closed


@pytest.mark.asyncio
async def test_emit_after_close_is_dropped() -> None:
    bus = EventBus()
    bus.close()
    await bus.emit(WarningRaised(message="late"))

    assert bus.qsize() == 0


def test_event_dict_uses_event_key() -> None:
    event = WorkerChanged(name="w1", status="running", files_modified=["a.rs"])

    data = event_to_dict(event)

    assert data["event"] == "worker_changed"
    assert "event_type" not in data
    assert "issue" not in data
    assert dict_to_event(data) == event


def test_unknown_event_falls_back_to_base_type() -> None:
    event = dict_to_event({"event": "something_new", "x": 1})

    assert event.event_type == "something_new"


@pytest.mark.asyncio
async def test_emit_nowait_drops_when_full_or_closed() -> None:
    bus = EventBus(maxsize=2)

    assert bus.emit_nowait(WorkerLogLine(name="w1", line="a"))
    assert bus.emit_nowait(WorkerLogLine(name="w1", line="b"))
    assert not bus.emit_nowait(WorkerLogLine(name="w1", line="c"))
    assert [e.line for e in bus.drain()] == ["a", "b"]

    bus.close()
    assert not bus.emit_nowait(WarningRaised(message="late"))
    assert bus.qsize() == 0
