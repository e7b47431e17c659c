"""Lifecycle of the local ``opencode serve`` instance for each working directory."""

from __future__ import annotations

import asyncio
import re
import signal
import socket
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from ocrelay.client import OpencodeClient
from ocrelay.config import RelayConfig
from ocrelay.errors import OpencodeAPIError, ServerStartError
from ocrelay.models import ServerState, ServerStatus
from ocrelay.registry import ServerRegistry

logger = structlog.get_logger("ocrelay.server")

_PORT_PATTERN = re.compile(r":(\d+)")
STDERR_KEEP_LINES = 200


class ServerInstance:
    """A server used for one working directory, owned or adopted."""

    def __init__(
        self,
        cwd: str,
        *,
        external: bool = False,
        process: asyncio.subprocess.Process | None = None,
        url: str | None = None,
        port: int | None = None,
        agent: str = "build",
        model: str | None = None,
        session_id: str | None = None,
        state: ServerState = ServerState.STARTING,
        client: OpencodeClient | None = None,
    ) -> None:
        self.cwd = cwd
        self.external = external
        self.process = process
        self.url = url
        self.port = port
        self.agent = agent
        self.model = model
        self.session_id = session_id
        self.state = state
        self.client = client
        self.stderr: deque[str] = deque(maxlen=STDERR_KEEP_LINES)
        self.tasks: set[asyncio.Task] = set()
        # resolved with the port from the startup banner
        self.announced: asyncio.Future[int] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def alive(self) -> bool:
        if self.external:
            return True
        return self.process is not None and self.process.returncode is None


class ServerManager:
    """Spawns, adopts, tracks and stops servers keyed by working directory.

    At most one instance is in use per directory. Concurrent callers of
    ``ensure_running`` for the same directory share one in-flight task.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: ServerRegistry | None = None,
        client_factory: Callable[[str], OpencodeClient] | None = None,
    ) -> None:
        self._config = config
        self.registry = registry or ServerRegistry()
        self._client_factory = client_factory or OpencodeClient
        self._servers: dict[str, ServerInstance] = {}
        self._starting: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, cwd: str) -> ServerInstance | None:
        """Tracked instance for ``cwd`` in any state, without liveness checks."""
        return self._servers.get(cwd)

    def resolve(self, cwd: str) -> ServerInstance | None:
        """Return the usable instance for ``cwd``.

        External instances are trusted until the next start attempt probes
        them. An owned instance whose process has exited is forgotten and its
        registry entry removed.
        """
        instance = self._servers.get(cwd)
        if instance is None or instance.state != ServerState.READY:
            return None
        if instance.alive():
            return instance
        logger.info("Server process is gone", cwd=cwd, pid=instance.pid)
        self._forget(cwd, instance)
        return None

    def tracked(self) -> list[str]:
        return list(self._servers)

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    def _shared(self, cwd: str, factory: Callable[[], Coroutine[Any, Any, str]]) -> asyncio.Task:
        task = self._starting.get(cwd)
        if task is None:
            task = asyncio.create_task(factory())
            self._starting[cwd] = task

            def _clear(done: asyncio.Task, cwd: str = cwd) -> None:
                if self._starting.get(cwd) is done:
                    del self._starting[cwd]

            task.add_done_callback(_clear)
        return task

    async def ensure_running(self, cwd: str) -> str:
        """Return the server URL for ``cwd``, adopting or spawning as needed.

        Raises:
            ServerStartError: The server could not be started.
        """
        instance = self.resolve(cwd)
        if instance is not None and instance.url:
            return instance.url
        task = self._shared(cwd, lambda: self._adopt_or_spawn(cwd))
        return await asyncio.shield(task)

    async def spawn(self, cwd: str) -> str:
        """Start a new server for ``cwd`` (one in-flight start per directory).

        Raises:
            ServerStartError: Startup timed out or the process exited early.
        """
        task = self._shared(cwd, lambda: self._spawn(cwd))
        return await asyncio.shield(task)

    async def _adopt_or_spawn(self, cwd: str) -> str:
        instance = self.resolve(cwd)
        if instance is not None and instance.url:
            return instance.url
        entry = self.registry.get(cwd)
        if entry is not None:
            client = self._client_factory(entry.url)
            if await client.health(timeout=self._config.server.health_timeout_s):
                logger.info("Adopting running server", cwd=cwd, url=entry.url, owner_pid=entry.owner_pid)
                self._servers[cwd] = ServerInstance(
                    cwd,
                    external=True,
                    url=entry.url,
                    port=entry.port,
                    agent=self._config.agent,
                    model=self._config.model,
                    state=ServerState.READY,
                    client=client,
                )
                return entry.url
            await client.aclose()
            logger.info("Removing stale registry entry", cwd=cwd, url=entry.url)
            self.registry.unregister(cwd)
        return await self._spawn(cwd)

    def _pick_port(self) -> int:
        """First configured port that can be bound, else 0 for an OS-assigned one."""
        host = self._config.server.hostname
        for port in self._config.server.ports:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                try:
                    sock.bind((host, port))
                except OSError:
                    continue
            return port
        return 0

    async def _spawn(self, cwd: str) -> str:
        server_config = self._config.server
        program = self._config.opencode_bin()
        port = self._pick_port()
        cmd = [program, "serve", "--port", str(port), "--hostname", server_config.hostname]
        logger.info("Starting opencode server", cwd=cwd, port=port)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ServerStartError(f"Failed to launch {program}: {exc}") from exc

        instance = ServerInstance(
            cwd,
            process=process,
            agent=self._config.agent,
            model=self._config.model,
        )
        self._servers[cwd] = instance
        announced: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        instance.announced = announced
        readers = [
            asyncio.create_task(self._drain(process.stdout, announced, None)),
            asyncio.create_task(self._drain(process.stderr, announced, instance.stderr)),
        ]
        instance.tasks.update(readers)
        instance.tasks.add(asyncio.create_task(self._watch_exit(cwd, instance, announced, readers)))

        timeout = server_config.startup_timeout_s
        try:
            announced_port = await asyncio.wait_for(announced, timeout)
        except asyncio.TimeoutError:
            logger.warning("Server startup timed out", cwd=cwd, timeout_s=timeout)
            self._abandon(cwd, instance)
            raise ServerStartError(f"Server startup timed out ({int(timeout)}s)") from None
        except ServerStartError:
            self._abandon(cwd, instance)
            raise

        url = f"http://{server_config.hostname}:{announced_port}"
        instance.port = announced_port
        instance.url = url
        instance.client = self._client_factory(url)
        instance.state = ServerState.READY
        self.registry.register(cwd, announced_port, url, owner_pid=process.pid)
        logger.info("Server ready", cwd=cwd, url=url, pid=process.pid)
        return url

    async def _drain(
        self,
        stream: asyncio.StreamReader | None,
        announced: "asyncio.Future[int]",
        sink: deque[str] | None,
    ) -> None:
        """Read a pipe to EOF; the first ``:<port>`` seen on either pipe wins."""
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if sink is not None and line:
                sink.append(line)
            if not announced.done():
                match = _PORT_PATTERN.search(line)
                if match:
                    announced.set_result(int(match.group(1)))

    async def _watch_exit(
        self,
        cwd: str,
        instance: ServerInstance,
        announced: "asyncio.Future[int]",
        readers: list[asyncio.Task],
    ) -> None:
        assert instance.process is not None
        code = await instance.process.wait()
        await asyncio.wait(readers, timeout=1.0)
        if not announced.done():
            message = "\n".join(instance.stderr) or "Server exited unexpectedly"
            announced.set_exception(ServerStartError(message))
            return
        logger.info("Server exited", cwd=cwd, pid=instance.pid, exit_code=code)
        if self._servers.get(cwd) is instance:
            self._forget(cwd, instance)

    def _abandon(self, cwd: str, instance: ServerInstance) -> None:
        """Drop a server that never became ready."""
        if self._servers.get(cwd) is instance:
            del self._servers[cwd]
        instance.state = ServerState.STOPPED
        self._kill(instance, signal.SIGKILL)
        for task in instance.tasks:
            if task is not asyncio.current_task():
                task.cancel()

    def _forget(self, cwd: str, instance: ServerInstance) -> None:
        if self._servers.get(cwd) is instance:
            del self._servers[cwd]
        instance.state = ServerState.STOPPED
        if not instance.external:
            self._unregister_owned(cwd, instance)
        if instance.client is not None:
            self._close_client_soon(instance)

    def _unregister_owned(self, cwd: str, instance: ServerInstance) -> None:
        entry = self.registry.get(cwd)
        if entry is not None and entry.owner_pid in (None, instance.pid):
            self.registry.unregister(cwd)

    def _close_client_soon(self, instance: ServerInstance) -> None:
        client, instance.client = instance.client, None
        if client is None:
            return
        task = asyncio.get_running_loop().create_task(client.aclose())
        instance.tasks.add(task)
        task.add_done_callback(instance.tasks.discard)

    @staticmethod
    def _kill(instance: ServerInstance, sig: int) -> None:
        process = instance.process
        if process is None or process.returncode is not None:
            return
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def stop(self, cwd: str, force: bool = False) -> bool:
        """Stop the server for ``cwd``.

        Owned servers get SIGTERM (SIGKILL when ``force``) and are killed if
        still alive after the grace window. External servers are only
        forgotten.

        Returns:
            Whether a server was tracked for ``cwd``.
        """
        instance = self._servers.pop(cwd, None)
        if instance is None:
            return False
        instance.state = ServerState.STOPPED
        client, instance.client = instance.client, None
        if instance.announced is not None and not instance.announced.done():
            instance.announced.set_exception(ServerStartError("Server stopped during startup"))
        if instance.external:
            logger.info("Forgetting external server", cwd=cwd, url=instance.url)
        else:
            await self._terminate(instance, force)
            self._unregister_owned(cwd, instance)
            for task in instance.tasks:
                task.cancel()
            logger.info("Server stopped", cwd=cwd, pid=instance.pid)
        if client is not None:
            await client.aclose()
        return True

    async def _terminate(self, instance: ServerInstance, force: bool) -> None:
        process = instance.process
        if process is None or process.returncode is not None:
            return
        self._kill(instance, signal.SIGKILL if force else signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), self._config.server.stop_grace_s)
        except asyncio.TimeoutError:
            logger.warning("Server ignored SIGTERM, killing", pid=process.pid)
            self._kill(instance, signal.SIGKILL)
            await process.wait()

    async def stop_all(self, force: bool = False) -> int:
        """Stop every owned server and forget external ones.

        Returns:
            Number of owned servers stopped.
        """
        for task in list(self._starting.values()):
            task.cancel()
        count = 0
        for cwd, instance in list(self._servers.items()):
            owned = not instance.external
            if await self.stop(cwd, force=force) and owned:
                count += 1
        self._servers.clear()
        return count

    # ------------------------------------------------------------------
    # Per-directory settings
    # ------------------------------------------------------------------

    def get_agent(self, cwd: str) -> str:
        instance = self.resolve(cwd)
        return instance.agent if instance is not None and instance.agent else self._config.agent

    async def set_agent(self, cwd: str, agent: str) -> bool:
        """Record the agent and push it as the server's ``default_agent``.

        Returns:
            False if no server is tracked or the server rejected the update.
        """
        instance = self._servers.get(cwd)
        if instance is None:
            return False
        instance.agent = agent
        if instance.client is None or instance.state != ServerState.READY:
            return True
        try:
            await instance.client.set_default_agent(agent)
        except OpencodeAPIError as exc:
            logger.warning("Failed to update agent on server", cwd=cwd, agent=agent, error=str(exc))
            return False
        return True

    def get_model(self, cwd: str) -> str | None:
        instance = self.resolve(cwd)
        return instance.model if instance is not None else None

    def set_model(self, cwd: str, model: str | None) -> None:
        instance = self._servers.get(cwd)
        if instance is not None:
            instance.model = model

    def get_session(self, cwd: str) -> str | None:
        instance = self.resolve(cwd)
        return instance.session_id if instance is not None else None

    def set_session(self, cwd: str, session_id: str | None) -> None:
        instance = self._servers.get(cwd)
        if instance is not None:
            instance.session_id = session_id

    def update_settings(
        self,
        cwd: str,
        *,
        agent: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
    ) -> None:
        """Update the local settings of a tracked server; None leaves a value unchanged."""
        instance = self._servers.get(cwd)
        if instance is None:
            return
        if agent is not None:
            instance.agent = agent
        if model is not None:
            instance.model = model
        if session_id is not None:
            instance.session_id = session_id

    def status(self, cwd: str) -> ServerStatus:
        instance = self._servers.get(cwd)
        if instance is None:
            return ServerStatus(cwd=cwd, state=ServerState.STOPPED, agent=self._config.agent, model=self._config.model)
        return ServerStatus(
            cwd=cwd,
            state=instance.state,
            url=instance.url,
            port=instance.port,
            external=instance.external,
            pid=instance.pid,
            agent=instance.agent,
            model=instance.model,
            session_id=instance.session_id,
        )
