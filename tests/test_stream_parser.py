from __future__ import annotations

import json
from datetime import datetime, timezone

from gensui.engine.stream_parser import (
    SessionStreamParser,
    modified_file,
    normalize_tool_name,
)
from gensui.shared.models.session import (
    AssistantMessage,
    Error,
    Result,
    ThinkingBlock,
    ToolResult,
    ToolUse,
)

NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _parse(record) -> object:
    line = record if isinstance(record, str) else json.dumps(record)
    return SessionStreamParser().parse_line(line, NOW)


def test_assistant_record_with_mixed_blocks_yields_events_in_order() -> None:
    parsed = _parse({
        "type": "assistant",
        "session_id": "sess-1",
        "message": {
            "content": [
                {"type": "thinking", "thinking": "Plan first"},
                {"type": "text", "text": "Editing now"},
                {"type": "tool_use", "id": "tu-1", "name": "Edit",
                 "input": {"file_path": "src/a.rs"}},
            ],
        },
    })

    assert parsed.anomaly is None
    assert parsed.session_id == "sess-1"
    assert parsed.events == (
        ThinkingBlock(content="Plan first", timestamp=NOW),
        AssistantMessage(text="Editing now", timestamp=NOW),
        ToolUse(name="Edit", timestamp=NOW, input={"file_path": "src/a.rs"}, tool_use_id="tu-1"),
    )


def test_user_tool_result_block_is_labelled_with_its_tool_use_id() -> None:
    parsed = _parse({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu-1",
             "content": [{"type": "text", "text": "ok"}]},
        ]},
    })

    assert parsed.events == (
        ToolResult(name="tu-1", timestamp=NOW, output="ok", tool_use_id="tu-1"),
    )


def test_result_record_reports_error_from_flag_or_subtype() -> None:
    ok = _parse({"type": "result", "subtype": "success", "result": "done"})
    flagged = _parse({"type": "result", "is_error": True, "result": "nope"})
    by_subtype = _parse({"type": "result", "subtype": "error_max_turns"})

    assert ok.events == (Result(text="done", is_error=False, timestamp=NOW),)
    assert flagged.events[0].is_error is True
    assert by_subtype.events[0].is_error is True


def test_flat_records_map_to_their_event_kind() -> None:
    assert _parse({"type": "tool_use", "name": "Write", "id": "t1",
                   "input": {"path": "b.rs"}}).events[0].name == "Write"
    assert _parse({"type": "thinking", "content": "hmm"}).events == (
        ThinkingBlock(content="hmm", timestamp=NOW),
    )
    assert _parse({"type": "error", "error": {"message": "rate limited"}}).events == (
        Error(message="rate limited", timestamp=NOW),
    )
    assert _parse({"type": "message", "role": "assistant", "content": "hi"}).events == (
        AssistantMessage(text="hi", timestamp=NOW),
    )


def test_system_record_only_reports_session_id() -> None:
    parsed = _parse({"type": "system", "subtype": "init", "session_id": "abc"})

    assert parsed.events == ()
    assert parsed.anomaly is None
    assert parsed.session_id == "abc"


def test_malformed_lines_become_anomalies() -> None:
    assert _parse("{not json").anomaly is not None
    assert _parse("[1, 2]").anomaly.reason == "record is not an object"
    assert _parse({"no_type": 1}).anomaly.reason == "missing type field"

    unknown = _parse({"type": "telemetry", "session_id": "s"})
    assert unknown.events == ()
    assert unknown.session_id == "s"
    assert "telemetry" in str(unknown.anomaly)


def test_blank_line_is_ignored() -> None:
    parsed = _parse("   \n")

    assert parsed.events == ()
    assert parsed.anomaly is None


def test_parsing_is_deterministic_for_a_fixed_timestamp() -> None:
    line = json.dumps({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "x", "name": "Read", "input": {"file_path": "a"}},
    ]}})
    parser = SessionStreamParser()

    assert parser.parse_line(line, NOW) == parser.parse_line(line, NOW)


def test_normalize_tool_name_aliases() -> None:
    assert normalize_tool_name("write_file") == "Write"
    assert normalize_tool_name("mcp__fs__edit_file") == "Edit"
    assert normalize_tool_name("Bash") == "Bash"


def test_modified_file_only_for_mutating_tools() -> None:
    edit = ToolUse(name="Edit", timestamp=NOW, input={"file_path": "a.rs"})
    write = ToolUse(name="write_file", timestamp=NOW, input={"path": " b.rs "})
    read = ToolUse(name="Read", timestamp=NOW, input={"file_path": "c.rs"})

    assert modified_file(edit) == "a.rs"
    assert modified_file(write) == "b.rs"
    assert modified_file(read) is None
    assert modified_file(AssistantMessage(text="a.rs", timestamp=NOW)) is None
