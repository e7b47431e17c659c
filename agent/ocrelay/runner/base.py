"""Runner interfaces and the per-request Exchange handle."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol

import structlog
from pydantic import BaseModel

from ocrelay.models import ExchangeResult, Mode, RequestState, StreamState
from ocrelay.transcript import Spinner, render, render_timeout, status_line

logger = structlog.get_logger("ocrelay.runner")

CANCELLED_MESSAGE = "Request cancelled"


class RunnerEvents:
    """Callback sink for exchange progress.

    The default implementation ignores everything; subclasses override what
    they need.
    """

    async def on_update(self, exchange: "Exchange") -> None:
        """Called on every state change and periodically while running."""

    async def on_finished(self, exchange: "Exchange", result: ExchangeResult) -> None:
        """Called exactly once when the exchange reaches a terminal state."""


class ExchangeRequest(BaseModel):
    """Everything a runner needs to execute one prompt."""
    prompt: str
    cwd: str
    agent: str
    agent_override: bool = False
    model: str | None = None
    session_id: str | None = None
    files: list[str] | None = None
    source_file: str | None = None
    command: str | None = None


class Exchange:
    """A single in-flight request.

    Natural completion, cancellation and timeout all race through ``finish``,
    which only takes effect once. Finishing kills the subprocess and cancels
    every attached task other than the caller's.
    """

    def __init__(
        self,
        mode: Mode,
        agent: str,
        prompt: str,
        *,
        events: RunnerEvents | None = None,
        timeout_s: float | None = None,
        prior: str | None = None,
        session_id: str | None = None,
        model_label: str | None = None,
    ) -> None:
        self.id: int | None = None
        self.mode = mode
        self.agent = agent
        self.prompt = prompt
        self.timeout_s = timeout_s
        self.prior = prior
        self.model_label = model_label
        self.header: list[str] = []
        self.stream = StreamState()
        self.stderr: list[str] = []
        self.exit_code: int | None = None
        self.error: str | None = None
        self.state = RequestState.BUILDING
        self.started_at = time.monotonic()
        self.finished_at: float | None = None
        self._session_id = session_id
        self._events = events or RunnerEvents()
        self._spinner = Spinner()
        self._done = asyncio.Event()
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def session_id(self) -> str | None:
        return self._session_id or self.stream.session_id

    @session_id.setter
    def session_id(self, value: str | None) -> None:
        self._session_id = value

    @property
    def elapsed_s(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def set_running(self) -> None:
        if self.state == RequestState.BUILDING:
            self.state = RequestState.RUNNING

    def attach_process(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        if self.state.terminal:
            self._kill_process()

    def attach_task(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.state.terminal and task is not asyncio.current_task():
            task.cancel()
        return task

    def finish(self, state: RequestState, error: str | None = None) -> bool:
        """Move to a terminal state; later calls are ignored.

        Returns:
            True if this call decided the outcome.
        """
        if self.state.terminal:
            return False
        if not state.terminal:
            raise ValueError(f"{state} is not a terminal state")
        self.state = state
        if error:
            self.error = error
        self.finished_at = time.monotonic()
        self.release()
        self._done.set()
        logger.info(
            "Exchange finished",
            request_id=self.id,
            state=state.value,
            session_id=self.session_id,
            elapsed_s=round(self.elapsed_s, 3),
        )
        return True

    def kill(self) -> None:
        """Cancel the exchange; used by the request registry."""
        self.finish(RequestState.CANCELLED, CANCELLED_MESSAGE)

    def cancel(self) -> bool:
        return self.finish(RequestState.CANCELLED, CANCELLED_MESSAGE)

    def release(self) -> None:
        """Kill the subprocess and cancel attached tasks; safe to call repeatedly."""
        self._kill_process()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    def _kill_process(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> RequestState:
        await self._done.wait()
        return self.state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def notify(self) -> None:
        """Deliver ``on_update``; callback failures are logged, never raised."""
        try:
            await self._events.on_update(self)
        except Exception:
            logger.exception("on_update callback failed", request_id=self.id)

    async def notify_finished(self, result: ExchangeResult) -> None:
        try:
            await self._events.on_finished(self, result)
        except Exception:
            logger.exception("on_finished callback failed", request_id=self.id)

    def lines(self) -> list[str]:
        """Transcript lines for the current state (live view while running)."""
        if self.state == RequestState.TIMED_OUT:
            return render_timeout(self.header, self.timeout_s or 0, self.stderr)
        running = not self.state.terminal
        status = None
        if running:
            status = status_line(self.stream, self.elapsed_s, self._spinner.next(), self.model_label)
        return render(
            self.header,
            self.stream,
            running=running,
            status=status,
            error=self.error,
            stderr=self.stderr,
        )

    def transcript(self) -> str:
        return "\n".join(self.lines())

    def result(self) -> ExchangeResult:
        text = self.stream.response_text or None
        error = self.error or self.stream.error
        return ExchangeResult(
            request_id=self.id,
            state=self.state,
            mode=self.mode,
            agent=self.agent,
            text=None if error and self.state != RequestState.COMPLETED else text,
            error=error,
            session_id=self.session_id,
            transcript=self.transcript(),
            exit_code=self.exit_code,
            stderr=list(self.stderr),
            todos=self.stream.todos,
            elapsed_s=self.elapsed_s,
        )


class Runner(Protocol):
    """Executes an exchange for one mode."""

    mode: Mode

    async def run(self, exchange: Exchange, request: ExchangeRequest) -> None:
        ...
