"""Tests for the opencode HTTP client."""

import json

import httpx
import pytest

from ocrelay.client import OpencodeClient, split_model
from ocrelay.errors import OpencodeAPIError


def test_split_model() -> None:
    assert split_model("anthropic/claude-sonnet") == ("anthropic", "claude-sonnet")
    assert split_model("openrouter/meta/llama") == ("openrouter", "meta/llama")
    assert split_model("plain") == (None, None)
    assert split_model(None) == (None, None)


def _client(handler) -> OpencodeClient:
    return OpencodeClient("http://test", transport=httpx.MockTransport(handler))


class TestRequests:
    @pytest.mark.anyio
    async def test_prompt_body(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(204)

        client = _client(handler)
        await client.send_message_async("ses_1", "hi", agent="plan", model="anthropic/claude")
        await client.aclose()

        path, body = seen[0]
        assert path == "/session/ses_1/prompt_async"
        assert body == {
            "parts": [{"type": "text", "text": "hi"}],
            "agent": "plan",
            "providerID": "anthropic",
            "modelID": "claude",
        }

    @pytest.mark.anyio
    async def test_unknown_session_is_none(self) -> None:
        client = _client(lambda request: httpx.Response(404, json={}))
        assert await client.get_session("ses_gone") is None

    @pytest.mark.anyio
    async def test_errors_carry_status(self) -> None:
        client = _client(lambda request: httpx.Response(500, json={}))
        with pytest.raises(OpencodeAPIError) as excinfo:
            await client.create_session()
        assert excinfo.value.status_code == 500

    @pytest.mark.anyio
    async def test_session_without_id_is_rejected(self) -> None:
        client = _client(lambda request: httpx.Response(200, json={"title": "x"}))
        with pytest.raises(OpencodeAPIError, match="without an id"):
            await client.create_session()

    @pytest.mark.anyio
    async def test_health(self) -> None:
        assert await _client(lambda request: httpx.Response(200)).health() is True
        assert await _client(lambda request: httpx.Response(503)).health() is False

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _client(refuse).health() is False

    @pytest.mark.anyio
    async def test_event_stream_error_status(self) -> None:
        client = _client(lambda request: httpx.Response(502))
        with pytest.raises(OpencodeAPIError):
            async for _ in client.events():
                pass
