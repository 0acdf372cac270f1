from __future__ import annotations

import pytest

from gensui.engine.action_log import (
    ACTION_LOG_CAPACITY,
    COMPACT_KEEP,
    ActionLog,
    ActionLogEntry,
)


def test_append_past_capacity_evicts_oldest() -> None:
    log = ActionLog()
    for i in range(ACTION_LOG_CAPACITY + 6):
        log.append(f"entry {i}")

    messages = [e.message for e in log]
    assert len(log) == ACTION_LOG_CAPACITY
    assert messages[0] == "entry 6"
    assert messages[-1] == f"entry {ACTION_LOG_CAPACITY + 5}"


def test_compact_keeps_most_recent_entries() -> None:
    log = ActionLog()
    for i in range(10):
        log.append(f"entry {i}", worker="w1", category="step")

    removed = log.compact()

    assert removed == 10 - COMPACT_KEEP
    assert [e.message for e in log] == ["entry 6", "entry 7", "entry 8", "entry 9"]


def test_compact_on_short_log_removes_nothing() -> None:
    log = ActionLog()
    log.append("only")

    assert log.compact() == 0
    assert len(log) == 1


def test_restore_trims_to_capacity() -> None:
    entries = [ActionLogEntry(message=str(i)) for i in range(100)]
    log = ActionLog()
    log.restore(entries)

    assert len(log) == ACTION_LOG_CAPACITY
    assert log.entries()[0].message == "36"


def test_entry_dict_round_trip_keeps_worker_and_category() -> None:
    entry = ActionLog().append("Step 'test' completed", worker="w2", category="step")

    assert ActionLogEntry.from_dict(entry.to_dict()) == entry
    assert "[w2]" in entry.format()


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ActionLog(capacity=0)
