"""Request orchestration for the opencode assistant (quick and agentic modes)."""

from __future__ import annotations

__version__ = "0.1.0"
