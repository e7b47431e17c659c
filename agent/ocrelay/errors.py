"""Exception types raised inside the relay.

None of these reach callers of ``Orchestrator.submit``; they are folded into
an ``ExchangeResult`` first.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures."""


class ServerStartError(RelayError):
    """The local server never announced a port, or exited before doing so."""


class OpencodeAPIError(RelayError):
    """An HTTP call to the opencode server failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidModeError(RelayError, ValueError):
    """Mode other than ``quick`` or ``agentic``."""


class InvalidSessionIdError(RelayError, ValueError):
    """Session id that cannot be used as a transcript file name."""
