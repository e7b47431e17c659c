"""Pydantic models for stream state, registry records and exchange results."""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Mode(str, Enum):
    """How a prompt is executed."""
    QUICK = "quick"
    AGENTIC = "agentic"


class RequestState(str, Enum):
    """Lifecycle states for a single exchange."""
    BUILDING = "building"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self not in (RequestState.BUILDING, RequestState.RUNNING)


class ServerState(str, Enum):
    """Lifecycle states for a local server instance."""
    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"


class TodoItem(BaseModel):
    """Entry of the structured todo list written by the ``todowrite`` tool.

    status is one of pending, in_progress, completed, cancelled; priority is
    one of low, medium, high. Other values are kept as-is.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    content: str = ""
    status: str = "pending"
    priority: Optional[str] = None


class TextPart(BaseModel):
    """A text part of the response, keyed by the server's part id."""
    id: Optional[str] = None
    text: str = ""


class StreamState(BaseModel):
    """Unified progress/response state folded from NDJSON lines or SSE events."""
    parts: list[TextPart] = Field(default_factory=list)
    thinking: bool = False
    current_tool: Optional[str] = None
    tool_status: Optional[str] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    todos: Optional[list[TodoItem]] = None
    busy: bool = False

    @property
    def response_text(self) -> str:
        return "".join(part.text for part in self.parts)


class RegistryEntry(BaseModel):
    """Record in the cross-instance server registry file."""
    model_config = ConfigDict(populate_by_name=True)

    port: Optional[int] = None
    url: str
    owner_pid: Optional[int] = Field(default=None, alias="ownerPid")
    writer_pid: Optional[int] = Field(default=None, alias="writerPid")
    timestamp: int = Field(default_factory=lambda: int(time.time()))


class SessionSummary(BaseModel):
    """Listing entry for a stored transcript."""
    id: str
    preview: str
    modified_time: float

    @property
    def display(self) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(self.modified_time))
        return f"{stamp} - {self.preview}"


class ServerStatus(BaseModel):
    """Snapshot of a server instance for status displays."""
    cwd: str
    state: ServerState
    url: Optional[str] = None
    port: Optional[int] = None
    external: bool = False
    pid: Optional[int] = None
    agent: str = "build"
    model: Optional[str] = None
    session_id: Optional[str] = None


class ExchangeResult(BaseModel):
    """Final outcome of an exchange, handed to the caller exactly once."""
    request_id: Optional[int] = None
    state: RequestState
    mode: Mode
    agent: str
    text: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None
    transcript: str = ""
    exit_code: Optional[int] = None
    stderr: list[str] = Field(default_factory=list)
    todos: Optional[list[TodoItem]] = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == RequestState.COMPLETED and self.error is None
