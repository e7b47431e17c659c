"""Runner selection for the two execution modes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ocrelay.config import RelayConfig
from ocrelay.errors import InvalidModeError
from ocrelay.models import Mode
from ocrelay.runner.agentic import AgenticRunner
from ocrelay.runner.base import Exchange, ExchangeRequest, Runner, RunnerEvents
from ocrelay.runner.quick import QuickRunner

if TYPE_CHECKING:
    from ocrelay.server import ServerManager


def get_runner(mode: Mode | str, config: RelayConfig, servers: "ServerManager") -> Runner:
    """Return the runner for a mode.

    Args:
        mode: ``quick`` or ``agentic``.
        config: Relay configuration.
        servers: Server manager used by agentic mode.
    """
    try:
        mode = Mode(mode)
    except ValueError:
        raise InvalidModeError(f"Unknown mode: {mode}") from None
    if mode == Mode.AGENTIC:
        return AgenticRunner(config, servers)
    return QuickRunner(config)


__all__ = [
    "AgenticRunner",
    "Exchange",
    "ExchangeRequest",
    "QuickRunner",
    "Runner",
    "RunnerEvents",
    "get_runner",
]
