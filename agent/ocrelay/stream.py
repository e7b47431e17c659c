"""Fold opencode NDJSON lines and SSE events into a StreamState.

Every function here is a pure step over a StreamState: replaying the same
records on a fresh state yields an equal state. Unknown record types and
fields are ignored; malformed NDJSON lines are skipped.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from ocrelay.models import StreamState, TextPart, TodoItem

TODO_TOOL = "todowrite"


def error_message(err: Any) -> str:
    """Extract a human-readable message from an opencode error payload."""
    if isinstance(err, dict):
        data = err.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        for key in ("message", "name"):
            if err.get(key):
                return str(err[key])
    elif isinstance(err, str) and err:
        return err
    return "Unknown error"


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def response_lines(state: StreamState) -> list[str]:
    """Response text split into display lines."""
    text = state.response_text
    if not text:
        return []
    return normalize_newlines(text).split("\n")


def _parse_todos(raw: Any) -> list[TodoItem] | None:
    if not isinstance(raw, list):
        return None
    todos: list[TodoItem] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            todos.append(TodoItem.model_validate(item))
        except ValidationError:
            continue
    return todos


def _set_error(state: StreamState, err: Any) -> None:
    state.error = error_message(err)
    state.parts = []
    state.thinking = False
    state.current_tool = None


def _set_part_text(state: StreamState, part_id: str | None, text: str) -> bool:
    """Store the full text of a part; a known part id is replaced, not re-appended."""
    if part_id is not None:
        for existing in state.parts:
            if existing.id == part_id:
                if existing.text == text:
                    return False
                existing.text = text
                return True
    state.parts.append(TextPart(id=part_id, text=text))
    return True


def _append_delta(state: StreamState, part_id: str | None, delta: str) -> None:
    if part_id is not None:
        for existing in state.parts:
            if existing.id == part_id:
                existing.text += delta
                return
    state.parts.append(TextPart(id=part_id, text=delta))


def _capture_tool(state: StreamState, part: dict) -> None:
    state.thinking = False
    state.current_tool = part.get("tool") or "unknown tool"
    tool_state = part.get("state")
    if isinstance(tool_state, dict):
        state.tool_status = tool_state.get("status") or "running"
        if part.get("tool") == TODO_TOOL:
            tool_input = tool_state.get("input")
            if isinstance(tool_input, dict):
                todos = _parse_todos(tool_input.get("todos"))
                if todos is not None:
                    state.todos = todos


# ---------------------------------------------------------------------------
# NDJSON (quick mode: ``opencode run --format json``)
# ---------------------------------------------------------------------------


def apply_record(state: StreamState, record: Any) -> bool:
    """Fold one decoded NDJSON record into the state.

    Returns:
        True if the record was recognized.
    """
    if not isinstance(record, dict):
        return False

    if record.get("sessionID") and not state.session_id:
        state.session_id = str(record["sessionID"])

    kind = record.get("type")
    part = record.get("part") if isinstance(record.get("part"), dict) else None

    if kind == "error" and record.get("error"):
        _set_error(state, record["error"])
        return True

    # An error is terminal for content; ids above are still captured.
    if state.error:
        return False

    part_type = part.get("type") if part else None
    if kind in ("thinking", "reasoning") or part_type in ("thinking", "reasoning"):
        state.thinking = True
        state.current_tool = None
        return True

    if kind == "text" and part and part_type == "text":
        state.thinking = False
        state.current_tool = None
        _set_part_text(state, part.get("id"), part.get("text") or "")
        return True

    if kind == "tool_use" and part:
        _capture_tool(state, part)
        return True

    if kind == "tool-call" and part:
        state.thinking = False
        state.current_tool = part.get("toolName") or part.get("name") or "unknown tool"
        state.tool_status = "calling"
        return True

    if kind == "tool-result" and part:
        state.current_tool = part.get("toolName") or part.get("name") or "tool"
        state.tool_status = "completed"
        return True

    return False


def apply_ndjson_line(state: StreamState, line: str) -> bool:
    """Decode and fold a single stdout line; blank and malformed lines are skipped."""
    line = line.strip()
    if not line:
        return False
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return False
    return apply_record(state, record)


def fold_ndjson(lines: Iterable[str], state: StreamState | None = None) -> StreamState:
    state = state if state is not None else StreamState()
    for line in lines:
        apply_ndjson_line(state, line)
    return state


# ---------------------------------------------------------------------------
# SSE (agentic mode: ``GET /event``)
# ---------------------------------------------------------------------------


def event_session_id(data: Any) -> str | None:
    """Session id an SSE event refers to, if it carries one."""
    if not isinstance(data, dict):
        return None
    if data.get("sessionID"):
        return data["sessionID"]
    for key in ("info", "part"):
        inner = data.get(key)
        if isinstance(inner, dict) and inner.get("sessionID"):
            return inner["sessionID"]
    return None


def is_content_event(event_type: str | None, data: Any) -> bool:
    """True for part updates that show the response has started."""
    if event_type != "message.part.updated" or not isinstance(data, dict):
        return False
    part = data.get("part")
    return isinstance(part, dict) and part.get("type") in ("text", "tool")


def is_idle_event(event_type: str | None, data: Any) -> bool:
    if event_type == "session.idle":
        return True
    if event_type == "session.status" and isinstance(data, dict):
        status = data.get("status")
        return isinstance(status, dict) and status.get("type") == "idle"
    return False


def _apply_part_updated(state: StreamState, data: dict) -> bool:
    part = data.get("part")
    if not isinstance(part, dict):
        return False
    changed = False
    if part.get("sessionID") and not state.session_id:
        state.session_id = part["sessionID"]
        changed = True
    if part.get("messageID") and not state.message_id:
        state.message_id = part["messageID"]
        changed = True
    if state.error:
        return changed

    part_type = part.get("type")
    if part_type == "text":
        state.thinking = False
        state.current_tool = None
        delta = data.get("delta")
        if delta:
            _append_delta(state, part.get("id"), delta)
            return True
        text = part.get("text")
        if text:
            return _set_part_text(state, part.get("id"), text) or changed
        return changed
    if part_type == "reasoning":
        state.thinking = True
        state.current_tool = None
        return True
    if part_type == "tool":
        _capture_tool(state, part)
        return True
    return changed


def apply_sse_event(state: StreamState, event_type: str | None, data: Any) -> bool:
    """Fold one SSE event into the state.

    Args:
        state: State to update in place.
        event_type: SSE event name, e.g. ``message.part.updated``.
        data: Event properties.

    Returns:
        True if the state changed.
    """
    if not event_type or not isinstance(data, dict):
        return False

    if event_type == "message.part.updated":
        return _apply_part_updated(state, data)

    if event_type == "message.updated":
        info = data.get("info")
        if not isinstance(info, dict):
            return False
        if info.get("sessionID") and not state.session_id:
            state.session_id = info["sessionID"]
        if info.get("id") and not state.message_id:
            state.message_id = info["id"]
        if info.get("error"):
            _set_error(state, info["error"])
        return True

    if event_type == "session.status":
        status = data.get("status")
        if not isinstance(status, dict):
            return False
        state.busy = status.get("type") == "busy"
        return True

    if event_type == "session.idle":
        state.busy = False
        return True

    if event_type == "session.error":
        if not data.get("error"):
            return False
        _set_error(state, data["error"])
        return True

    if event_type == "todo.updated":
        todos = _parse_todos(data.get("todos"))
        if todos is None:
            return False
        state.todos = todos
        return True

    return False


def fold_sse(
    events: Iterable[tuple[str | None, Any]], state: StreamState | None = None
) -> StreamState:
    state = state if state is not None else StreamState()
    for event_type, data in events:
        apply_sse_event(state, event_type, data)
    return state
