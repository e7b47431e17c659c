"""Request orchestration: mode resolution, execution, timeout, cancellation and persistence."""

from __future__ import annotations

import asyncio
import os
import subprocess

import structlog

from ocrelay.config import RelayConfig, load_config, save_config
from ocrelay.errors import InvalidModeError, RelayError
from ocrelay.models import ExchangeResult, Mode, RequestState
from ocrelay.prompt import parse_directives
from ocrelay.registry import ServerRegistry
from ocrelay.requests import QueuedRequest, RequestQueue, RequestRegistry
from ocrelay.runner import Exchange, ExchangeRequest, RunnerEvents, get_runner
from ocrelay.server import ServerManager
from ocrelay.store import SessionStore

logger = structlog.get_logger("ocrelay.orchestrator")


def _coerce_mode(mode: Mode | str) -> Mode:
    try:
        return Mode(mode)
    except ValueError:
        raise InvalidModeError(f"Unknown mode: {mode} (expected 'quick' or 'agentic')") from None


class Orchestrator:
    """Owns all per-directory state and runs exchanges end to end.

    Every exchange resolves into an ExchangeResult; transport and process
    failures never escape ``submit``.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        servers: ServerManager | None = None,
        sessions_root: str | None = None,
        config_path: str | None = None,
    ) -> None:
        self._config_path = config_path
        self.config = config or load_config(config_path)
        self.servers = servers or ServerManager(self.config, ServerRegistry())
        self.queue = RequestQueue(self._process_queued)
        self.requests = RequestRegistry(self.queue)
        self._sessions_root = sessions_root
        self._stores: dict[str, SessionStore] = {}
        self._modes: dict[str, Mode] = {}
        self._exchanges: dict[int, Exchange] = {}
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Per-directory state
    # ------------------------------------------------------------------

    def store_for(self, cwd: str) -> SessionStore:
        store = self._stores.get(cwd)
        if store is None:
            store = SessionStore(cwd, root=self._sessions_root)
            self._stores[cwd] = store
        return store

    def get_mode(self, cwd: str) -> Mode:
        return self._modes.get(cwd, self.config.mode)

    def set_mode(self, cwd: str, mode: Mode | str) -> Mode:
        """Set the runtime mode for one project; not persisted."""
        resolved = _coerce_mode(mode)
        self._modes[cwd] = resolved
        logger.info("Mode changed", cwd=cwd, mode=resolved.value)
        return resolved

    def set_model(self, model: str | None) -> None:
        """Select a model, persist it to the config file and push it to every tracked server."""
        self.config.model = model or None
        try:
            save_config(self.config, self._config_path)
        except OSError:
            logger.warning("Failed to persist model selection", exc_info=True)
        for cwd in self.servers.tracked():
            self.servers.set_model(cwd, self.config.model)

    def model_label(self) -> str | None:
        return self.config.model_display() if self.config.model else None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def submit(
        self,
        prompt: str,
        files: list[str] | None = None,
        *,
        cwd: str | None = None,
        session_id: str | None = None,
        source_file: str | None = None,
        events: RunnerEvents | None = None,
    ) -> ExchangeResult:
        """Run one prompt and return its final result.

        Markers in the prompt select the mode (``#quick``/``#agentic``), the
        agent (``#plan``/``#build``) and a continuation session
        (``#session(<id>)``).

        Args:
            prompt: Prompt text, possibly carrying markers.
            files: Extra files to attach in quick mode.
            cwd: Project directory; defaults to the process cwd.
            session_id: Session to continue; a marker in the prompt wins.
            source_file: File the prompt came from, for context-file discovery.
            events: Progress callbacks.
        """
        cwd = cwd or os.getcwd()
        directives = parse_directives(prompt)
        mode = directives.mode or self.get_mode(cwd)
        agent = directives.agent or (
            self.servers.get_agent(cwd) if mode == Mode.AGENTIC else self.config.agent
        )
        continuation = directives.session_id or session_id
        request = ExchangeRequest(
            prompt=directives.prompt,
            cwd=cwd,
            agent=agent,
            agent_override=directives.agent is not None,
            model=self.config.model,
            session_id=continuation,
            files=files,
            source_file=source_file,
        )
        return await self._execute(mode, request, events)

    async def run_command(
        self,
        command: str,
        args: str | None = None,
        *,
        cwd: str | None = None,
        events: RunnerEvents | None = None,
    ) -> ExchangeResult:
        """Run an opencode slash command in a fresh session through ``opencode run``."""
        request = ExchangeRequest(
            prompt=args or "",
            cwd=cwd or os.getcwd(),
            agent="build",
            model=self.config.model,
            command=command.lstrip("/"),
        )
        return await self._execute(Mode.QUICK, request, events)

    async def _execute(
        self,
        mode: Mode,
        request: ExchangeRequest,
        events: RunnerEvents | None,
    ) -> ExchangeResult:
        store = self.store_for(request.cwd)
        prior = None
        if request.session_id and not request.command:
            try:
                prior = store.load(request.session_id)
            except RelayError as exc:
                logger.warning("Ignoring unusable session id", session_id=request.session_id, error=str(exc))
                request.session_id = None

        exchange = Exchange(
            mode,
            request.agent,
            request.prompt,
            events=events,
            timeout_s=self.config.timeout_s(),
            prior=prior,
            session_id=request.session_id,
            model_label=self.model_label(),
        )
        exchange.id = self.requests.register(exchange, cleanup=exchange.release)
        self._exchanges[exchange.id] = exchange
        runner = get_runner(mode, self.config, self.servers)

        with structlog.contextvars.bound_contextvars(request_id=exchange.id, mode=mode.value):
            logger.info("Exchange started", cwd=request.cwd, agent=request.agent, session_id=request.session_id)
            run_task = exchange.attach_task(asyncio.create_task(runner.run(exchange, request)))
            run_task.add_done_callback(lambda task: self._on_run_done(exchange, task))
            ticker = asyncio.create_task(self._tick(exchange))
            try:
                await asyncio.wait_for(exchange.wait(), exchange.timeout_s)
            except asyncio.TimeoutError:
                exchange.finish(
                    RequestState.TIMED_OUT,
                    f"Request timed out after {int(exchange.timeout_s or 0)} seconds",
                )
            finally:
                ticker.cancel()
                self.requests.unregister(exchange.id)
                self._exchanges.pop(exchange.id, None)
            await asyncio.wait({run_task}, timeout=1.0)

            result = exchange.result()
            self._persist(store, exchange, result)
            if mode == Mode.AGENTIC and result.session_id:
                self.servers.set_session(request.cwd, result.session_id)
            await exchange.notify()
            await exchange.notify_finished(result)
        return result

    def _on_run_done(self, exchange: Exchange, task: asyncio.Task) -> None:
        if task.cancelled() or exchange.state.terminal:
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Runner failed", request_id=exchange.id, error=str(exc), exc_info=exc)
            exchange.finish(RequestState.FAILED, str(exc) or type(exc).__name__)
        else:
            exchange.finish(RequestState.FAILED, "Runner exited without a result")

    async def _tick(self, exchange: Exchange) -> None:
        interval = self.config.update_interval_ms / 1000
        while not exchange.done:
            await exchange.notify()
            await asyncio.sleep(interval)

    def _persist(self, store: SessionStore, exchange: Exchange, result: ExchangeResult) -> None:
        if not result.session_id:
            return
        try:
            store.save(result.session_id, result.transcript)
        except (OSError, RelayError):
            logger.warning("Failed to save transcript", session_id=result.session_id, exc_info=True)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def dispatch(
        self,
        prompt: str,
        files: list[str] | None = None,
        *,
        cwd: str | None = None,
        source_file: str | None = None,
        events: RunnerEvents | None = None,
    ) -> int:
        """Start a prompt now, or queue it behind the running one.

        Returns:
            0 when started immediately, else the 1-based queue position.
        """
        if self.queue.busy:
            return self.queue.enqueue(prompt, files, source_file, cwd=cwd, events=events)
        self.queue.set_busy(True)
        self._spawn_background(self._run_and_release(QueuedRequest(prompt, files, source_file, cwd=cwd, events=events)))
        return 0

    def _process_queued(self, item: QueuedRequest) -> None:
        self._spawn_background(self._run_and_release(item))

    async def _run_and_release(self, item: QueuedRequest) -> None:
        try:
            await self.submit(
                item.prompt,
                item.files,
                cwd=item.options.get("cwd"),
                source_file=item.source_file,
                events=item.options.get("events"),
            )
        finally:
            self.queue.set_busy(False)

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Cancellation and shutdown
    # ------------------------------------------------------------------

    def cancel(self, request_id: int) -> bool:
        return self.requests.cancel(request_id)

    def cancel_all(self) -> int:
        cleared = self.queue.clear()
        count = self.requests.cancel_all()
        logger.info("Cancelled all requests", cancelled=count, dequeued=cleared)
        return count

    def active(self) -> list[Exchange]:
        return [self._exchanges[i] for i in self.requests.active_ids() if i in self._exchanges]

    def list_models(self) -> list[str]:
        """Run ``opencode models`` synchronously.

        Raises:
            RelayError: The command failed or timed out.
        """
        program = self.config.opencode_bin()
        try:
            completed = subprocess.run(
                [program, "models"],
                capture_output=True,
                text=True,
                timeout=self.config.models_timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RelayError(f"Failed to list models: {exc}") from exc
        if completed.returncode != 0:
            detail = completed.stderr.strip() or f"exit code {completed.returncode}"
            raise RelayError(f"Failed to list models: {detail}")
        return [line.strip() for line in completed.stdout.splitlines() if line.strip()]

    async def shutdown(self, force: bool = False) -> None:
        self.cancel_all()
        for task in list(self._background):
            task.cancel()
        stopped = await self.servers.stop_all(force=force)
        logger.info("Orchestrator shut down", servers_stopped=stopped)
