"""Runner that routes prompts through a persistent ``opencode serve`` instance."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from ocrelay.client import OpencodeClient
from ocrelay.config import RelayConfig
from ocrelay.errors import OpencodeAPIError, ServerStartError
from ocrelay.models import Mode, RequestState
from ocrelay.runner.base import Exchange, ExchangeRequest
from ocrelay.stream import apply_sse_event, event_session_id, is_content_event, is_idle_event
from ocrelay.transcript import SPINNER_FRAMES, agentic_header, with_prior

if TYPE_CHECKING:
    from ocrelay.server import ServerManager

logger = structlog.get_logger("ocrelay.runner.agentic")

STREAM_CLOSED_MESSAGE = "Event stream closed unexpectedly"


class _EventConsumer:
    """Follows ``GET /event`` for one exchange and decides when it is complete.

    The prompt is sent on ``server.connected`` or after the connect fallback,
    whichever comes first. Idle after the first text or tool part completes
    the exchange once the settle delay has passed; idle before any content is
    ignored.
    """

    def __init__(
        self,
        exchange: Exchange,
        client: OpencodeClient,
        session_id: str,
        *,
        prompt: str,
        agent: str,
        model: str | None,
        settle_s: float,
        connect_fallback_s: float,
    ) -> None:
        self.exchange = exchange
        self.client = client
        self.session_id = session_id
        self.prompt = prompt
        self.agent = agent
        self.model = model
        self.settle_s = settle_s
        self.connect_fallback_s = connect_fallback_s
        self.sent = False
        self.response_started = False
        self._settle_task: asyncio.Task | None = None

    def _send_soon(self) -> None:
        if self.sent:
            return
        self.sent = True
        self.exchange.attach_task(asyncio.create_task(self._send()))

    async def _send(self) -> None:
        try:
            await self.client.send_message_async(
                self.session_id, self.prompt, agent=self.agent, model=self.model
            )
        except OpencodeAPIError as exc:
            logger.warning("prompt_async failed", request_id=self.exchange.id, error=str(exc))
            self.exchange.finish(RequestState.FAILED, f"Failed to send message: {exc}")
            return
        logger.debug("Prompt sent", request_id=self.exchange.id, session_id=self.session_id)

    async def _fallback(self) -> None:
        await asyncio.sleep(self.connect_fallback_s)
        if not self.sent:
            logger.debug("No server.connected event, sending anyway", request_id=self.exchange.id)
            self._send_soon()

    async def _settle(self) -> None:
        await asyncio.sleep(self.settle_s)
        self.exchange.finish(RequestState.COMPLETED)

    async def handle(self, event_type: str | None, data: Any) -> None:
        if event_type == "server.connected":
            self._send_soon()
            return
        owner = event_session_id(data)
        if owner and owner != self.session_id:
            return
        state = self.exchange.stream
        changed = apply_sse_event(state, event_type, data)
        if is_content_event(event_type, data):
            self.response_started = True
        if state.error:
            self.exchange.finish(RequestState.FAILED)
            return
        if is_idle_event(event_type, data) and self.response_started and self._settle_task is None:
            self._settle_task = self.exchange.attach_task(asyncio.create_task(self._settle()))
        if changed:
            await self.exchange.notify()

    async def consume(self) -> None:
        exchange = self.exchange
        exchange.attach_task(asyncio.create_task(self._fallback()))
        try:
            async for event_type, data in self.client.events():
                if exchange.state.terminal:
                    return
                await self.handle(event_type, data)
                if exchange.state.terminal:
                    return
        except OpencodeAPIError as exc:
            logger.warning("Event stream failed", request_id=exchange.id, error=str(exc))
            exchange.finish(RequestState.FAILED, str(exc))
            return
        if exchange.state.terminal:
            return
        stream = exchange.stream
        if stream.response_text and not stream.error:
            exchange.finish(RequestState.COMPLETED)
        else:
            exchange.finish(RequestState.FAILED, stream.error or STREAM_CLOSED_MESSAGE)


class AgenticRunner:
    """Runs exchanges against the per-directory server managed by ServerManager."""

    mode = Mode.AGENTIC

    def __init__(self, config: RelayConfig, servers: "ServerManager") -> None:
        self._config = config
        self._servers = servers

    async def run(self, exchange: Exchange, request: ExchangeRequest) -> None:
        """Start or reuse the server, pick the session, then follow the event stream.

        Args:
            exchange: Exchange to update and finish.
            request: Prompt, agent and session options.
        """
        cwd = request.cwd
        exchange.header = ["**Mode:** [agentic]", "", f"Starting opencode server... {SPINNER_FRAMES[0]}"]
        await exchange.notify()

        try:
            url = await self._servers.ensure_running(cwd)
        except ServerStartError as exc:
            logger.warning("Server failed to start", cwd=cwd, error=str(exc))
            exchange.header = ["**Mode:** [agentic]", ""]
            exchange.finish(RequestState.FAILED, f"Failed to start opencode server: {exc}")
            return

        instance = self._servers.get(cwd)
        if instance is None or instance.client is None:
            exchange.header = ["**Mode:** [agentic]", ""]
            exchange.finish(RequestState.FAILED, "Failed to start opencode server: server went away")
            return

        if request.agent_override:
            instance.agent = request.agent
            agent = request.agent
        else:
            agent = instance.agent or request.agent
        exchange.agent = agent
        model = instance.model or request.model
        wanted_session = request.session_id or instance.session_id

        exchange.header = with_prior(exchange.prior, agentic_header(url, agent, request.prompt))
        try:
            session_id = await instance.client.get_or_create_session(wanted_session)
        except OpencodeAPIError as exc:
            exchange.finish(RequestState.FAILED, f"Failed to create session: {exc}")
            return
        instance.session_id = session_id
        exchange.session_id = session_id
        exchange.set_running()
        await exchange.notify()

        consumer = _EventConsumer(
            exchange,
            instance.client,
            session_id,
            prompt=request.prompt,
            agent=agent,
            model=model,
            settle_s=self._config.settle_delay_ms / 1000,
            connect_fallback_s=self._config.connect_fallback_ms / 1000,
        )
        await consumer.consume()
