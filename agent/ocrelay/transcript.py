"""Markdown rendering of exchanges, both for live display and for the stored transcript."""

from __future__ import annotations

import shlex
from collections.abc import Iterable, Sequence

from ocrelay.models import StreamState, TodoItem
from ocrelay.stream import normalize_newlines, response_lines

SESSION_SEPARATOR = "\n\n" + "=" * 79 + "\n\n"
SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")
NO_RESPONSE = "No response received."

_STATUS_ICONS = {
    "pending": "[ ]",
    "in_progress": "[~]",
    "completed": "[x]",
    "cancelled": "[-]",
}
_PRIORITY_MARKERS = {"high": "!!!", "medium": "!!", "low": "!"}
_ACTIVE_TOOL_STATUSES = ("calling", "pending", "running")


class Spinner:
    """Cycles through the braille spinner frames."""

    def __init__(self) -> None:
        self._index = 0

    def next(self) -> str:
        frame = SPINNER_FRAMES[self._index]
        self._index = (self._index + 1) % len(SPINNER_FRAMES)
        return frame


def single_line(text: str) -> str:
    return " ".join(normalize_newlines(text).split("\n"))


def display_command(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in cmd).replace("\n", "\\n")


def _query_block(prompt: str) -> list[str]:
    return ["", "**Query:**", *normalize_newlines(prompt).split("\n"), "", "---", ""]


def quick_header(cmd: Sequence[str], prompt: str) -> list[str]:
    return ["**Mode:** [quick]", f"**Command:** `{display_command(cmd)}`", *_query_block(prompt)]


def agentic_header(url: str, agent: str, prompt: str) -> list[str]:
    return [
        f"**Mode:** [agentic] → {url}",
        f"**API:** `POST /session/:id/prompt_async [agent={agent}]`",
        *_query_block(prompt),
    ]


def command_header(cmd: Sequence[str], command: str, args: str | None, model_label: str | None) -> list[str]:
    args_display = f" {args}" if args else ""
    model_display = f" [{model_label}]" if model_label else ""
    return [
        f"**Command:** `{display_command(cmd)}`",
        "",
        f"**Running:** `/{command}`{args_display}{model_display}",
        "",
        "---",
        "",
    ]


def with_prior(prior: str | None, header: list[str]) -> list[str]:
    """Prefix a header with an earlier transcript and the session separator."""
    if not prior:
        return list(header)
    return (prior + SESSION_SEPARATOR + "\n".join(header)).split("\n")


def status_line(
    state: StreamState,
    elapsed_s: float,
    frame: str,
    model_label: str | None = None,
) -> str:
    elapsed = f" ({int(elapsed_s)}s)"
    if state.thinking:
        return f"**Status:** Thinking{elapsed} {frame}"
    if state.current_tool:
        if (state.tool_status or "running") in _ACTIVE_TOOL_STATUSES:
            return f"**Status:** Executing `{state.current_tool}`{elapsed} {frame}"
        return f"**Status:** Completed `{state.current_tool}`{elapsed} {frame}"
    model_info = f" [{model_label}]" if model_label else ""
    return f"**Status:** Running{model_info}{elapsed} {frame}"


def format_todos(todos: Iterable[TodoItem] | None) -> list[str]:
    todos = list(todos or [])
    if not todos:
        return []
    lines = ["", "---", "**Todo List:**", ""]
    for todo in todos:
        icon = _STATUS_ICONS.get(todo.status, "[ ]")
        priority = _PRIORITY_MARKERS.get(todo.priority or "", "")
        lines.append(f"{icon} {todo.content} {priority}".rstrip())
    lines += ["---", ""]
    return lines


def stderr_block(stderr: Sequence[str], running: bool = False) -> list[str]:
    if not stderr:
        return []
    title = "**stderr output (process still running):**" if running else "**stderr output:**"
    return ["", title, "```", *stderr, "```"]


def render(
    header: list[str],
    state: StreamState,
    *,
    running: bool,
    status: str | None = None,
    error: str | None = None,
    stderr: Sequence[str] = (),
) -> list[str]:
    """Compose display lines for an exchange.

    Args:
        header: Header lines, including any earlier transcript.
        state: Current stream state.
        running: Whether the exchange is still in flight.
        status: Status line shown while running.
        error: Error overriding whatever the stream reported.
        stderr: Captured stderr, shown only next to errors or empty responses.
    """
    lines = list(header)
    if running and status:
        lines += [status, ""]
    lines += format_todos(state.todos)
    message = error or state.error
    body = response_lines(state)
    if message:
        lines.append(f"**Error:** {single_line(message)}")
        lines += stderr_block(stderr)
    elif body:
        lines += body
    elif not running:
        lines.append(NO_RESPONSE)
        lines += stderr_block(stderr)
    return lines


def render_timeout(header: list[str], timeout_s: float, stderr: Sequence[str] = ()) -> list[str]:
    return [
        *header,
        f"**Error:** Request timed out after {int(timeout_s)} seconds",
        *stderr_block(stderr),
    ]
