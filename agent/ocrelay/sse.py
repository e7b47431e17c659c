"""Helpers for reading and producing server-sent event (SSE) streams."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

logger = structlog.get_logger("ocrelay.sse")


def sse_event(data: dict, event_type: str | None = None) -> str:
    """Serialize an event payload into SSE wire format."""
    payload = json.dumps(data, separators=(",", ":"))
    if event_type:
        return f"event: {event_type}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


class SSEDecoder:
    """Incremental decoder turning SSE lines into ``(event_type, data)`` pairs.

    opencode sends bare ``data:`` frames whose JSON carries ``type`` and
    ``properties``; those are unwrapped so callers always see the event name
    and its properties. Frames with an explicit ``event:`` field keep the
    decoded data as-is.
    """

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> tuple[str | None, Any] | None:
        """Consume one line; returns an event when a blank line ends a frame."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def flush(self) -> tuple[str | None, Any] | None:
        """Emit a trailing frame left without its blank terminator."""
        return self._dispatch()

    def _dispatch(self) -> tuple[str | None, Any] | None:
        if not self._data:
            self._event = None
            return None
        raw = "\n".join(self._data)
        event_type = self._event
        self._event = None
        self._data = []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE frame", event_type=event_type)
            return None
        if event_type is None and isinstance(payload, dict):
            event_type = payload.get("type")
            properties = payload.get("properties")
            payload = properties if isinstance(properties, dict) else {}
        return event_type, payload


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[tuple[str | None, Any]]:
    """Yield decoded events from a streaming httpx response."""
    decoder = SSEDecoder()
    async for line in response.aiter_lines():
        event = decoder.feed(line)
        if event is not None:
            yield event
    tail = decoder.flush()
    if tail is not None:
        yield tail
