"""HTTP client for the opencode server API."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from ocrelay.errors import OpencodeAPIError
from ocrelay.sse import iter_sse_events

logger = structlog.get_logger("ocrelay.client")

DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def split_model(model: str | None) -> tuple[str | None, str | None]:
    """Split ``provider/model`` into its two halves."""
    if not model or "/" not in model:
        return None, None
    provider, model_id = model.split("/", 1)
    return provider or None, model_id or None


class OpencodeClient:
    """Thin async wrapper around one persistent httpx client per server.

    Every non-2xx response or transport failure raises OpencodeAPIError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise OpencodeAPIError(
                f"{method} {path} returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise OpencodeAPIError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise OpencodeAPIError("Invalid JSON in server response") from exc

    async def health(self, timeout: float = 1.0) -> bool:
        """Probe ``GET /global/health``; any failure means not healthy."""
        try:
            response = await self._http.get("/global/health", timeout=timeout)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def create_session(self) -> dict:
        response = await self._request("POST", "/session", json={})
        data = self._json(response)
        if not isinstance(data, dict) or not data.get("id"):
            raise OpencodeAPIError("Server returned a session without an id")
        return data

    async def get_session(self, session_id: str) -> dict | None:
        """Fetch a session, or None when the server does not know it."""
        try:
            response = await self._request("GET", f"/session/{session_id}")
        except OpencodeAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        data = self._json(response)
        return data if isinstance(data, dict) else None

    async def get_or_create_session(self, session_id: str | None) -> str:
        """Return ``session_id`` if the server knows it, else a new session id."""
        if session_id:
            existing = await self.get_session(session_id)
            if existing is not None:
                return session_id
            logger.info("Session unknown to server, creating a new one", session_id=session_id)
        created = await self.create_session()
        return created["id"]

    async def send_message_async(
        self,
        session_id: str,
        text: str,
        *,
        agent: str | None = None,
        model: str | None = None,
    ) -> None:
        """Queue a prompt with ``POST /session/:id/prompt_async``.

        The response content is delivered only through the event stream.

        Args:
            session_id: Target session.
            text: Prompt text.
            agent: Agent name, e.g. ``build`` or ``plan``.
            model: Optional ``provider/model`` identifier.
        """
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if agent:
            body["agent"] = agent
        provider_id, model_id = split_model(model)
        if provider_id and model_id:
            body["providerID"] = provider_id
            body["modelID"] = model_id
        await self._request("POST", f"/session/{session_id}/prompt_async", json=body)

    async def set_default_agent(self, agent: str) -> None:
        await self._request("PATCH", "/config", json={"default_agent": agent})

    async def events(self) -> AsyncIterator[tuple[str | None, Any]]:
        """Subscribe to ``GET /event`` and yield ``(event_type, properties)``.

        The iterator ends when the server closes the stream.
        """
        timeout = httpx.Timeout(None, connect=5.0)
        try:
            async with self._http.stream("GET", "/event", timeout=timeout) as response:
                if response.status_code >= 400:
                    raise OpencodeAPIError(
                        f"GET /event returned HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                async for event in iter_sse_events(response):
                    yield event
        except httpx.HTTPError as exc:
            raise OpencodeAPIError(f"Event stream failed: {exc}") from exc
