from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from gensui.engine.action_log import ACTION_LOG_CAPACITY, ActionLogEntry
from gensui.engine.errors import PersistenceFailure
from gensui.engine.workflow import default_workflow
from gensui.shared.models.session import AssistantMessage, ToolUse
from gensui.shared.models.worker import Worker, WorkerStatus
from gensui.shared.services.persistence import (
    SCHEMA_VERSION,
    PersistenceManager,
    dict_to_worker,
    worker_to_dict,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _worker(name: str = "w1", worker_id: int = 1) -> Worker:
    worker = Worker(
        id=worker_id,
        name=name,
        workflow=default_workflow(),
        status=WorkerStatus.RUNNING,
        issue="#42",
        branch="gensui/worker-001",
        worktree="/tmp/wt/worker-001",
        current_step=1,
        current_step_name="implement",
        session_id="sess-1",
    )
    worker.begin_session("analyze it", started_at=T0)
    worker.record_event(ToolUse(name="Edit", timestamp=T0, input={"file_path": "a.rs"}), "a.rs")
    worker.record_event(AssistantMessage(text="done", timestamp=T0))
    worker.end_session(T0)
    worker.append_log("== analyze ==")
    return worker


def test_save_and_load_restores_worker(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    worker = _worker()

    path = persistence.save_worker(worker)
    result = persistence.load()

    assert path == tmp_path / "workers" / "w1.json"
    assert result.warnings == []
    [loaded] = result.workers
    assert loaded.name == "w1"
    assert loaded.status is WorkerStatus.RUNNING
    assert loaded.current_step == 1
    assert loaded.session_id == "sess-1"
    assert loaded.files_modified == {"a.rs"}
    assert loaded.sessions == worker.sessions
    assert list(loaded.logs) == ["== analyze =="]
    assert loaded.workflow == worker.workflow
    assert result.next_id == 2


def test_missing_state_dir_loads_empty(tmp_path) -> None:
    result = PersistenceManager(tmp_path / "absent").load()

    assert result.workers == []
    assert result.action_log == []
    assert result.next_id == 1


def test_truncated_worker_file_is_skipped_with_warning(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    persistence.save_worker(_worker("good", 1))
    persistence.save_worker(_worker("bad", 2))
    bad = persistence.worker_path("bad")
    bad.write_text(bad.read_text(encoding="utf-8")[:40], encoding="utf-8")

    result = persistence.load()

    assert [w.name for w in result.workers] == ["good"]
    assert len(result.warnings) == 1
    assert "bad.json" in result.warnings[0]


def test_only_file_truncated_gives_empty_registry_and_warning(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    persistence.save_worker(_worker())
    persistence.worker_path("w1").write_text('{"version": 1, "id"', encoding="utf-8")

    result = persistence.load()

    assert result.workers == []
    assert result.warnings


def test_unknown_schema_version_is_rejected(tmp_path) -> None:
    data = worker_to_dict(_worker())
    data["version"] = SCHEMA_VERSION + 1

    with pytest.raises(ValueError):
        dict_to_worker(data)


def test_step_index_out_of_range_is_rejected() -> None:
    data = worker_to_dict(_worker())
    data["current_step"] = 99

    with pytest.raises(ValueError):
        dict_to_worker(data)


def test_file_name_wins_over_recorded_name(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    persistence.save_worker(_worker("alpha"))
    persistence.worker_path("alpha").rename(persistence.worker_path("beta"))

    result = persistence.load()

    assert [w.name for w in result.workers] == ["beta"]
    assert result.warnings


def test_rename_and_delete_worker(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    worker = _worker("old")
    persistence.save_worker(worker)

    worker.name = "new"
    persistence.rename_worker(worker, "old")

    assert not persistence.worker_path("old").exists()
    assert persistence.worker_path("new").exists()
    assert persistence.delete_worker("new") is True
    assert persistence.delete_worker("new") is False


def test_action_log_is_capped_on_save_and_load(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    entries = [ActionLogEntry(message=f"m{i}", timestamp=T0) for i in range(80)]

    persistence.save_action_log(entries)
    lines = persistence.action_log_path.read_text(encoding="utf-8").splitlines()
    result = persistence.load()

    assert len(lines) == ACTION_LOG_CAPACITY
    assert len(result.action_log) == ACTION_LOG_CAPACITY
    assert result.action_log[-1].message == "m79"


def test_corrupt_action_log_line_is_skipped(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    persistence.save_action_log([ActionLogEntry(message="kept", timestamp=T0)])
    with open(persistence.action_log_path, "a", encoding="utf-8") as f:
        f.write('{"message": "trunc')

    result = persistence.load()

    assert [e.message for e in result.action_log] == ["kept"]
    assert len(result.warnings) == 1


def test_manager_state_round_trip(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    persistence.save_manager_state(next_id=9, default_workflow="fix-issue")

    result = persistence.load()

    assert result.next_id == 9
    assert result.default_workflow == "fix-issue"


def test_save_all_collects_failures(tmp_path) -> None:
    blocker = tmp_path / "state"
    blocker.write_text("not a directory", encoding="utf-8")
    persistence = PersistenceManager(blocker)

    failures = persistence.save_all([_worker()], [], next_id=2)

    assert failures
    assert all(isinstance(f, PersistenceFailure) for f in failures)


def test_saved_file_is_plain_json(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    path = persistence.save_worker(_worker())

    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["version"] == SCHEMA_VERSION
    assert data["sessions"][0]["total_tool_uses"] == 1


def test_status_history_and_worktree_ownership_survive_reload(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    worker = _worker()
    worker.set_status(WorkerStatus.PAUSED)
    worker.set_status(WorkerStatus.RUNNING)
    worker.owns_worktree = False
    persistence.save_worker(worker)

    [loaded] = persistence.load().workers

    assert loaded.transitions == [
        (WorkerStatus.RUNNING, WorkerStatus.PAUSED),
        (WorkerStatus.PAUSED, WorkerStatus.RUNNING),
    ]
    assert loaded.owns_worktree is False


def test_records_without_status_history_still_load() -> None:
    data = worker_to_dict(_worker())
    del data["transitions"]
    del data["owns_worktree"]

    loaded = dict_to_worker(data)

    assert loaded.transitions == []
    assert loaded.owns_worktree is True


def test_interrupted_writes_keep_every_previous_state_file(tmp_path) -> None:
    persistence = PersistenceManager(tmp_path)
    worker = _worker()
    persistence.save_worker(worker)
    persistence.save_manager_state(next_id=2, default_workflow="fix-issue")
    persistence.save_action_log([ActionLogEntry(message="first")])

    worker.current_step = 2
    with patch("gensui.shared.services.durable_write.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(PersistenceFailure):
            persistence.save_worker(worker)
        with pytest.raises(PersistenceFailure):
            persistence.save_manager_state(next_id=7, default_workflow="review")
        with pytest.raises(PersistenceFailure):
            persistence.save_action_log([ActionLogEntry(message="second")])

    result = persistence.load()
    assert result.warnings == []
    assert [w.current_step for w in result.workers] == [1]
    assert result.next_id == 2
    assert result.default_workflow == "fix-issue"
    assert [e.message for e in result.action_log] == ["first"]
