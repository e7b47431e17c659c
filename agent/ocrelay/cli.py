"""Command-line entry point for ocrelay."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

import structlog

from ocrelay import __version__
from ocrelay.client import OpencodeClient
from ocrelay.errors import RelayError
from ocrelay.logging import configure_logging
from ocrelay.models import ExchangeResult
from ocrelay.orchestrator import Orchestrator

logger = structlog.get_logger("ocrelay.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ocrelay", description="Relay prompts to opencode")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", default=None, help="Project directory (default: current directory)")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    ask = sub.add_parser("ask", help="Send a prompt")
    ask.add_argument("prompt")
    ask.add_argument("--mode", choices=["quick", "agentic"], default=None)
    ask.add_argument("--session", default=None, help="Session id to continue")
    ask.add_argument("--file", action="append", default=[], dest="files")
    ask.add_argument("--source-file", default=None)
    ask.add_argument("--transcript", action="store_true", help="Print the full transcript")

    command = sub.add_parser("command", help="Run an opencode slash command")
    command.add_argument("name")
    command.add_argument("args", nargs="?", default=None)

    sessions = sub.add_parser("sessions", help="List or show stored transcripts")
    sessions.add_argument("session_id", nargs="?", default=None)

    sub.add_parser("models", help="List available models")

    server = sub.add_parser("server", help="Inspect or start the project server")
    server.add_argument("action", choices=["status", "start"])
    return parser


def _print_result(result: ExchangeResult, transcript: bool) -> int:
    if transcript:
        print(result.transcript)
    elif result.text:
        print(result.text)
    if result.error:
        print(f"error: {result.error}", file=sys.stderr)
    if result.session_id:
        print(f"session: {result.session_id}", file=sys.stderr)
    return 0 if result.ok else 1


async def _ask(orchestrator: Orchestrator, args: argparse.Namespace, cwd: str) -> int:
    if args.mode:
        orchestrator.set_mode(cwd, args.mode)
    try:
        result = await orchestrator.submit(
            args.prompt,
            args.files or None,
            cwd=cwd,
            session_id=args.session,
            source_file=args.source_file,
        )
    finally:
        await orchestrator.shutdown()
    return _print_result(result, args.transcript)


async def _command(orchestrator: Orchestrator, args: argparse.Namespace, cwd: str) -> int:
    result = await orchestrator.run_command(args.name, args.args, cwd=cwd)
    return _print_result(result, transcript=False)


async def _server_status(orchestrator: Orchestrator, cwd: str) -> int:
    entry = orchestrator.servers.registry.get(cwd)
    if entry is None:
        print("stopped")
        return 1
    client = OpencodeClient(entry.url)
    try:
        healthy = await client.health(timeout=orchestrator.config.server.health_timeout_s)
    finally:
        await client.aclose()
    print(f"{'running' if healthy else 'unreachable'} {entry.url} (pid {entry.owner_pid})")
    return 0 if healthy else 1


async def _server_start(orchestrator: Orchestrator, cwd: str) -> int:
    try:
        url = await orchestrator.servers.ensure_running(cwd)
    except RelayError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    status = orchestrator.servers.status(cwd)
    if status.external:
        print(f"already running at {url}")
        return 0
    print(f"serving {cwd} at {url} (Ctrl-C to stop)")
    try:
        while orchestrator.servers.resolve(cwd) is not None:
            await asyncio.sleep(1.0)
    finally:
        await orchestrator.servers.stop_all()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    cwd = os.path.abspath(args.cwd or os.getcwd())
    orchestrator = Orchestrator()
    logger.debug("Running command", cmd=args.cmd, cwd=cwd)

    try:
        if args.cmd == "ask":
            return asyncio.run(_ask(orchestrator, args, cwd))
        if args.cmd == "command":
            return asyncio.run(_command(orchestrator, args, cwd))
        if args.cmd == "sessions":
            store = orchestrator.store_for(cwd)
            if args.session_id:
                content = store.load(args.session_id)
                if content is None:
                    print(f"no such session: {args.session_id}", file=sys.stderr)
                    return 1
                print(content)
                return 0
            for summary in store.list():
                print(f"{summary.id}\t{summary.display}")
            return 0
        if args.cmd == "models":
            for model in orchestrator.list_models():
                print(model)
            return 0
        if args.cmd == "server":
            if args.action == "status":
                return asyncio.run(_server_status(orchestrator, cwd))
            return asyncio.run(_server_start(orchestrator, cwd))
    except RelayError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 2


if __name__ == "__main__":
    sys.exit(main())
