"""Runner that executes each prompt as a one-shot ``opencode run`` subprocess."""

from __future__ import annotations

import asyncio

import structlog

from ocrelay.config import RelayConfig
from ocrelay.models import Mode, RequestState
from ocrelay.prompt import build_run_command, collect_files, extract_file_references
from ocrelay.runner.base import Exchange, ExchangeRequest
from ocrelay.stream import apply_ndjson_line
from ocrelay.transcript import command_header, quick_header, with_prior

logger = structlog.get_logger("ocrelay.runner.quick")

# opencode emits whole text parts as single NDJSON lines.
STREAM_LIMIT = 16 * 1024 * 1024


class QuickRunner:
    """Streams NDJSON from ``opencode run --format json`` into the exchange."""

    mode = Mode.QUICK

    def __init__(self, config: RelayConfig) -> None:
        self._config = config

    def build_command(self, request: ExchangeRequest) -> list[str]:
        program = self._config.opencode_bin()
        if request.command:
            files = extract_file_references(request.prompt, request.cwd) if request.prompt else []
            return build_run_command(
                program,
                request.prompt or None,
                agent="build",
                model=request.model,
                files=files,
                command=request.command,
            )
        files = collect_files(
            request.prompt,
            request.cwd,
            self._config.md_files,
            files=request.files,
            source_file=request.source_file,
        )
        return build_run_command(
            program,
            request.prompt,
            agent=request.agent,
            model=request.model,
            session_id=request.session_id,
            files=files,
        )

    async def run(self, exchange: Exchange, request: ExchangeRequest) -> None:
        """Launch the subprocess and fold its stdout until it exits.

        Args:
            exchange: Exchange to update and finish.
            request: Prompt, agent and attachment options.
        """
        cmd = self.build_command(request)
        if request.command:
            exchange.header = command_header(cmd, request.command, request.prompt, exchange.model_label)
        else:
            exchange.header = with_prior(exchange.prior, quick_header(cmd, request.prompt))
        exchange.set_running()
        await exchange.notify()

        logger.info("Starting opencode run", request_id=exchange.id, cwd=request.cwd, agent=request.agent)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=request.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            logger.warning("Failed to launch opencode", request_id=exchange.id, error=str(exc))
            exchange.finish(RequestState.FAILED, f"Failed to launch {cmd[0]}: {exc}")
            return
        exchange.attach_process(process)
        stderr_task = exchange.attach_task(asyncio.create_task(self._drain_stderr(process, exchange)))

        assert process.stdout is not None
        async for raw in process.stdout:
            if apply_ndjson_line(exchange.stream, raw.decode("utf-8", errors="replace")):
                await exchange.notify()

        code = await process.wait()
        await stderr_task
        exchange.exit_code = code
        logger.info("opencode run exited", request_id=exchange.id, exit_code=code)

        stream = exchange.stream
        if stream.error:
            exchange.finish(RequestState.FAILED)
        elif stream.response_text:
            exchange.finish(RequestState.COMPLETED)
        elif code != 0:
            exchange.finish(RequestState.FAILED, f"opencode exited with code {code}")
        else:
            exchange.finish(RequestState.COMPLETED)

    async def _drain_stderr(self, process: asyncio.subprocess.Process, exchange: Exchange) -> None:
        assert process.stderr is not None
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                exchange.stderr.append(line)
