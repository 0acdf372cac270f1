from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from gensui.shared.services.durable_write import (
    atomic_write_json,
    atomic_write_jsonl,
    atomic_write_text,
    remove_file,
)


def test_atomic_write_creates_parent_and_leaves_no_temp_files(tmp_path) -> None:
    path = tmp_path / "nested" / "state.json"

    atomic_write_json(path, {"a": 1, "名前": "値"})

    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1, "名前": "値"}
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]


def test_failed_replace_keeps_previous_content(tmp_path) -> None:
    path = tmp_path / "state.txt"
    atomic_write_text(path, "old")

    with patch("gensui.shared.services.durable_write.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            atomic_write_text(path, "new")

    assert path.read_text(encoding="utf-8") == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["state.txt"]


def test_jsonl_writes_one_record_per_line(tmp_path) -> None:
    path = tmp_path / "log.jsonl"

    atomic_write_jsonl(path, [{"n": 1}, {"n": 2}])

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["n"] for line in lines] == [1, 2]


def test_remove_file_reports_absence(tmp_path) -> None:
    path = tmp_path / "gone.json"
    path.write_text("{}", encoding="utf-8")

    assert remove_file(path) is True
    assert remove_file(path) is False
