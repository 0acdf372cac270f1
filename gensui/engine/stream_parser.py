"""Stream-json line parser for headless agent output.

Maps one line of ``--output-format stream-json`` output to zero or more
SessionEvents. Two shapes are accepted:

* nested Claude records (``system`` / ``assistant`` / ``user`` / ``result``)
  whose ``message.content`` holds typed blocks;
* flat records where ``type`` is the event kind itself (``tool_use``,
  ``tool_result``, ``thinking``, ``error``, ...).

Parsing is a pure function of the line and the supplied timestamp.
Unknown record types and malformed lines come back as a ParseAnomaly on
the result; they are never silently dropped and never raised.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from gensui.shared.models.session import (
    AssistantMessage,
    Error,
    Result,
    SessionEvent,
    ThinkingBlock,
    ToolResult,
    ToolUse,
)

from .errors import ParseAnomaly

logger = logging.getLogger(__name__)

_TOOL_NAME_ALIASES: dict[str, str] = {
    "write": "Write",
    "write_file": "Write",
    "file_write": "Write",
    "create_file": "Write",
    "edit": "Edit",
    "edit_file": "Edit",
    "file_edit": "Edit",
    "str_replace_editor": "Edit",
    "multiedit": "MultiEdit",
    "multi_edit": "MultiEdit",
    "notebookedit": "NotebookEdit",
    "notebook_edit": "NotebookEdit",
}

FILE_MUTATING_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

_PATH_KEYS = ("file_path", "path", "notebook_path")

# Record types that are understood but carry no session event
_SILENT_TYPES = frozenset({"system", "init"})


def normalize_tool_name(tool_name: str) -> str:
    """Normalize provider-specific tool aliases to canonical names."""
    if not tool_name:
        return ""
    bare_name = tool_name
    if bare_name.startswith("mcp__") and bare_name.count("__") >= 2:
        bare_name = bare_name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(bare_name.lower(), bare_name)


def modified_file(event: SessionEvent) -> str | None:
    """Return the path a file-mutating ToolUse writes to, if any."""
    if not isinstance(event, ToolUse):
        return None
    if normalize_tool_name(event.name) not in FILE_MUTATING_TOOLS:
        return None
    payload = event.input
    if not isinstance(payload, dict):
        return None
    for key in _PATH_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class ParsedLine:
    events: tuple[SessionEvent, ...] = ()
    session_id: str | None = None
    anomaly: ParseAnomaly | None = None


def _flatten_content(content: Any) -> str:
    """Collapse a tool_result content payload into display text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
            else:
                parts.append(json.dumps(block, ensure_ascii=False))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False)


class SessionStreamParser:
    """Stateless parser; one instance may be shared across workers."""

    def parse_line(self, line: str, now: datetime | None = None) -> ParsedLine:
        text = line.strip()
        if not text:
            return ParsedLine()
        ts = now or datetime.now(timezone.utc)

        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            return ParsedLine(anomaly=ParseAnomaly(text, f"invalid JSON: {exc.msg}"))
        if not isinstance(record, dict):
            return ParsedLine(anomaly=ParseAnomaly(text, "record is not an object"))

        session_id = record.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            session_id = None

        etype = record.get("type")
        if not isinstance(etype, str):
            return ParsedLine(
                session_id=session_id,
                anomaly=ParseAnomaly(text, "missing type field"),
            )

        handler = self._HANDLERS.get(etype)
        if handler is None:
            if etype in _SILENT_TYPES:
                return ParsedLine(session_id=session_id)
            return ParsedLine(
                session_id=session_id,
                anomaly=ParseAnomaly(text, f"unknown record type {etype!r}"),
            )
        events = handler(self, record, ts)
        return ParsedLine(events=tuple(events), session_id=session_id)

    # ── Nested Claude records ──

    def _parse_assistant(self, record: dict, ts: datetime) -> list[SessionEvent]:
        message = record.get("message")
        if isinstance(message, dict):
            content = message.get("content")
        else:
            content = record.get("text", record.get("content", message))
        if isinstance(content, str):
            return [AssistantMessage(text=content, timestamp=ts)] if content else []
        if not isinstance(content, list):
            return []

        events: list[SessionEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            btype = block.get("type")
            if btype == "text":
                text = str(block.get("text", ""))
                if text:
                    events.append(AssistantMessage(text=text, timestamp=ts))
            elif btype == "thinking":
                thinking = str(block.get("thinking") or block.get("text") or "")
                if thinking:
                    events.append(ThinkingBlock(content=thinking, timestamp=ts))
            elif btype == "tool_use":
                events.append(ToolUse(
                    name=str(block.get("name", "")),
                    timestamp=ts,
                    input=block.get("input"),
                    tool_use_id=block.get("id"),
                ))
            else:
                logger.debug("Ignoring assistant content block type %r", btype)
        return events

    def _parse_user(self, record: dict, ts: datetime) -> list[SessionEvent]:
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return []
        events: list[SessionEvent] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                tool_use_id = block.get("tool_use_id")
                events.append(ToolResult(
                    name=str(tool_use_id or ""),
                    timestamp=ts,
                    output=_flatten_content(block.get("content")),
                    tool_use_id=tool_use_id,
                ))
        return events

    def _parse_result(self, record: dict, ts: datetime) -> list[SessionEvent]:
        text = record.get("result", "")
        if not isinstance(text, str):
            text = json.dumps(text, ensure_ascii=False)
        subtype = str(record.get("subtype") or "")
        is_error = bool(record.get("is_error")) or subtype.startswith("error")
        return [Result(text=text, is_error=is_error, timestamp=ts)]

    # ── Flat records ──

    def _parse_message(self, record: dict, ts: datetime) -> list[SessionEvent]:
        if record.get("role", "assistant") != "assistant":
            return []
        content = record.get("content", "")
        if isinstance(content, list):
            return self._parse_assistant({"message": {"content": content}}, ts)
        text = str(content or "")
        return [AssistantMessage(text=text, timestamp=ts)] if text else []

    def _parse_tool_use(self, record: dict, ts: datetime) -> list[SessionEvent]:
        return [ToolUse(
            name=str(record.get("name") or record.get("tool_name") or ""),
            timestamp=ts,
            input=record.get("input", record.get("parameters")),
            tool_use_id=record.get("id") or record.get("tool_id") or record.get("tool_use_id"),
        )]

    def _parse_tool_result(self, record: dict, ts: datetime) -> list[SessionEvent]:
        tool_use_id = record.get("tool_use_id") or record.get("tool_id") or record.get("id")
        output = record.get("output", record.get("content"))
        return [ToolResult(
            name=str(record.get("name") or tool_use_id or ""),
            timestamp=ts,
            output=_flatten_content(output),
            tool_use_id=tool_use_id,
        )]

    def _parse_thinking(self, record: dict, ts: datetime) -> list[SessionEvent]:
        content = record.get("content") or record.get("thinking") or record.get("text") or ""
        return [ThinkingBlock(content=str(content), timestamp=ts)]

    def _parse_error(self, record: dict, ts: datetime) -> list[SessionEvent]:
        error = record.get("error")
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error, ensure_ascii=False)
        else:
            message = record.get("message") or error or "unknown error"
        return [Error(message=str(message), timestamp=ts)]

    _HANDLERS = {
        "assistant": _parse_assistant,
        "user": _parse_user,
        "result": _parse_result,
        "message": _parse_message,
        "tool_use": _parse_tool_use,
        "tool_result": _parse_tool_result,
        "thinking": _parse_thinking,
        "error": _parse_error,
    }
