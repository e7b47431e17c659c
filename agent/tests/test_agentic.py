"""Agentic-mode exchanges against an in-process fake opencode server."""

import asyncio
import json

import httpx
import pytest

from ocrelay.client import OpencodeClient
from ocrelay.models import RequestState
from ocrelay.orchestrator import Orchestrator
from ocrelay.registry import ServerRegistry
from ocrelay.runner import RunnerEvents
from ocrelay.server import ServerManager
from ocrelay.sse import sse_event

SERVER_URL = "http://127.0.0.1:4096"


def text_part(text: str, session_id: str = "ses_a", part_id: str = "prt_1") -> dict:
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {
                "id": part_id,
                "sessionID": session_id,
                "messageID": "msg_1",
                "type": "text",
                "text": text,
            }
        },
    }


def idle(session_id: str = "ses_a") -> dict:
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


class FakeServer:
    """Answers the opencode HTTP API and streams whatever is pushed onto ``events``.

    ``script`` is pushed onto the event stream once the prompt arrives.
    Pushing ``None`` closes the stream.
    """

    def __init__(self, script: list | None = None) -> None:
        self.events: asyncio.Queue = asyncio.Queue()
        self.script = list(script or [])
        self.sessions = {"ses_a"}
        self.created = 0
        self.prompts: list[tuple[str, dict]] = []
        self.prompt_status = 204
        self.streams_open = 0

    async def _stream(self):
        self.streams_open += 1
        try:
            yield sse_event({"type": "server.connected", "properties": {}}).encode()
            while True:
                item = await self.events.get()
                if item is None:
                    return
                yield sse_event(item).encode()
        finally:
            self.streams_open -= 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/global/health":
            return httpx.Response(200, json={"healthy": True})
        if path == "/event":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._stream())
        if request.method == "POST" and path == "/session":
            self.created += 1
            session_id = f"ses_new{self.created}"
            self.sessions.add(session_id)
            return httpx.Response(200, json={"id": session_id})
        if request.method == "POST" and path.endswith("/prompt_async"):
            session_id = path.split("/")[2]
            self.prompts.append((session_id, json.loads(request.content)))
            if self.prompt_status >= 400:
                return httpx.Response(self.prompt_status, json={})
            for item in self.script:
                self.events.put_nowait(item)
            return httpx.Response(self.prompt_status)
        if request.method == "GET" and path.startswith("/session/"):
            session_id = path.split("/")[2]
            if session_id in self.sessions:
                return httpx.Response(200, json={"id": session_id})
            return httpx.Response(404, json={})
        if request.method == "PATCH" and path == "/config":
            return httpx.Response(200, json={})
        return httpx.Response(404, json={})

    def client(self, url: str) -> OpencodeClient:
        return OpencodeClient(url, transport=httpx.MockTransport(self.handler))


class RecordingEvents(RunnerEvents):
    def __init__(self) -> None:
        self.exchange = None
        self.finished: list = []
        self.running = asyncio.Event()

    async def on_update(self, exchange) -> None:
        self.exchange = exchange
        if exchange.state == RequestState.RUNNING:
            self.running.set()

    async def on_finished(self, exchange, result) -> None:
        self.finished.append(result)


def make_orchestrator(fake: FakeServer, fast_config, tmp_path, cwd: str) -> Orchestrator:
    registry = ServerRegistry(str(tmp_path / "servers.json"))
    registry.register(cwd, 4096, SERVER_URL, owner_pid=99999)
    servers = ServerManager(fast_config, registry, fake.client)
    orchestrator = Orchestrator(
        fast_config,
        servers=servers,
        sessions_root=str(tmp_path / "sessions"),
        config_path=str(tmp_path / "config.json"),
    )
    orchestrator.set_mode(cwd, "agentic")
    return orchestrator


@pytest.fixture
def cwd(project_dir) -> str:
    return str(project_dir)


class TestCompletion:
    """When an agentic exchange is considered done."""

    @pytest.mark.anyio
    async def test_text_then_idle_completes_after_settle(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("hello"), idle()])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("say hello", cwd=cwd, session_id="ses_a")

        assert result.state == RequestState.COMPLETED
        assert result.text == "hello"
        assert result.session_id == "ses_a"
        assert result.elapsed_s >= fast_config.settle_delay_ms / 1000
        assert fake.created == 0
        session_id, body = fake.prompts[0]
        assert session_id == "ses_a"
        assert body["agent"] == "build"
        assert body["parts"] == [{"type": "text", "text": "say hello"}]

        saved = orchestrator.store_for(cwd).load("ses_a")
        assert saved.startswith(f"**Mode:** [agentic] → {SERVER_URL}")
        assert saved.endswith("hello")

    @pytest.mark.anyio
    async def test_idle_before_content_is_ignored(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([idle()])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)
        events = RecordingEvents()

        task = asyncio.create_task(orchestrator.submit("think first", cwd=cwd, session_id="ses_a", events=events))
        await asyncio.wait_for(events.running.wait(), 5.0)
        await asyncio.sleep(fast_config.settle_delay_ms / 1000 * 4)
        assert not events.exchange.done

        fake.events.put_nowait(text_part("done"))
        fake.events.put_nowait(idle())
        result = await asyncio.wait_for(task, 5.0)

        assert result.state == RequestState.COMPLETED
        assert result.text == "done"
        assert len(events.finished) == 1

    @pytest.mark.anyio
    async def test_other_sessions_are_filtered(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer(
            [
                text_part("not mine", session_id="ses_other", part_id="prt_x"),
                idle("ses_other"),
                text_part("mine"),
                idle(),
            ]
        )
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.text == "mine"

    @pytest.mark.anyio
    async def test_streaming_deltas_accumulate(self, fast_config, tmp_path, cwd) -> None:
        delta = {
            "type": "message.part.updated",
            "properties": {
                "part": {"id": "prt_1", "sessionID": "ses_a", "type": "text", "text": ""},
                "delta": " world",
            },
        }
        fake = FakeServer([text_part("hello"), delta, idle()])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.text == "hello world"


class TestFailures:
    """Errors reported by the server or the event stream."""

    @pytest.mark.anyio
    async def test_session_error_fails_immediately(self, fast_config, tmp_path, cwd) -> None:
        error = {
            "type": "session.error",
            "properties": {
                "sessionID": "ses_a",
                "error": {"name": "APIError", "data": {"message": "rate limited"}},
            },
        }
        fake = FakeServer([text_part("partial"), error])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.state == RequestState.FAILED
        assert result.error == "rate limited"
        assert result.text is None
        assert "**Error:** rate limited" in result.transcript

    @pytest.mark.anyio
    async def test_send_failure(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer()
        fake.prompt_status = 500
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.state == RequestState.FAILED
        assert result.error.startswith("Failed to send message")

    @pytest.mark.anyio
    async def test_stream_closed_without_content(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([None])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.state == RequestState.FAILED
        assert result.error == "Event stream closed unexpectedly"

    @pytest.mark.anyio
    async def test_stream_closed_after_text_completes(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("enough"), None])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd, session_id="ses_a")
        assert result.state == RequestState.COMPLETED
        assert result.text == "enough"


class TestSessions:
    @pytest.mark.anyio
    async def test_new_session_is_created_and_remembered(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("a", session_id="ses_new1"), idle("ses_new1")])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("hi", cwd=cwd)
        assert fake.created == 1
        assert result.session_id == "ses_new1"
        assert orchestrator.servers.get_session(cwd) == "ses_new1"
        assert orchestrator.store_for(cwd).exists("ses_new1")

    @pytest.mark.anyio
    async def test_unknown_session_is_replaced(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("fresh", session_id="ses_new1"), idle("ses_new1")])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("#session(ses_gone) continue", cwd=cwd)
        assert fake.created == 1
        assert result.session_id == "ses_new1"
        assert result.text == "fresh"
        assert fake.prompts[0][1]["parts"][0]["text"] == "continue"

    @pytest.mark.anyio
    async def test_agent_marker_overrides_server_agent(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("plan"), idle()])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)

        result = await orchestrator.submit("#plan outline it", cwd=cwd, session_id="ses_a")
        assert result.agent == "plan"
        assert fake.prompts[0][1]["agent"] == "plan"
        assert orchestrator.servers.get_agent(cwd) == "plan"

    @pytest.mark.anyio
    async def test_model_switch_reaches_tracked_server(self, fast_config, tmp_path, cwd) -> None:
        fake = FakeServer([text_part("ok"), idle()])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)
        orchestrator.set_model("anthropic/old")
        await orchestrator.submit("first", cwd=cwd, session_id="ses_a")

        orchestrator.set_model("openai/new")
        assert orchestrator.servers.get_model(cwd) == "openai/new"
        await orchestrator.submit("second", cwd=cwd, session_id="ses_a")

        first_body, second_body = fake.prompts[0][1], fake.prompts[1][1]
        assert (first_body["providerID"], first_body["modelID"]) == ("anthropic", "old")
        assert (second_body["providerID"], second_body["modelID"]) == ("openai", "new")


class TestTimeout:
    @pytest.mark.anyio
    async def test_stream_without_idle_times_out(self, fast_config, tmp_path, cwd) -> None:
        fast_config.timeout_ms = 1000
        fake = FakeServer([text_part("partial")])
        orchestrator = make_orchestrator(fake, fast_config, tmp_path, cwd)
        events = RecordingEvents()

        result = await orchestrator.submit("never ends", cwd=cwd, session_id="ses_a", events=events)

        assert result.state == RequestState.TIMED_OUT
        assert result.error == "Request timed out after 1 seconds"
        assert orchestrator.requests.active_count() == 0
        assert fake.streams_open == 0
        assert events.exchange.done
        saved = orchestrator.store_for(cwd).load("ses_a")
        assert "**Error:** Request timed out after 1 seconds" in saved
