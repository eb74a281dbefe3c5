"""Process-wide structlog configuration for applications embedding runledger."""

from __future__ import annotations

import sys

import structlog

from runledger.models.config import LogLevel

_LEVELS: dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def configure_logging(level: LogLevel = "info") -> None:
    """
    Configure structlog once at startup.

    Console output on a TTY, one JSON object per line otherwise. Library code
    never calls this; applications and examples do.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS[level]),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
