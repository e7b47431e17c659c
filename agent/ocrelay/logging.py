"""structlog configuration for the relay."""

from __future__ import annotations

import logging
import sys

import structlog

from ocrelay.settings import settings

_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog once; later calls are ignored.

    Args:
        level: Log level name; defaults to OCRELAY_LOG_LEVEL.
        fmt: ``console`` or ``json``; defaults to OCRELAY_LOG_FORMAT.
    """
    global _configured
    if _configured:
        return
    level_name = (level or settings.log_level()).upper()
    numeric = logging.getLevelName(level_name)
    if not isinstance(numeric, int):
        numeric = logging.WARNING
    renderer = (
        structlog.processors.JSONRenderer()
        if (fmt or settings.log_format()) == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _configured = True
