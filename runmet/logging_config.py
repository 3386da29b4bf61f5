"""Structured logging for RunMet using structlog.

Library modules only call ``structlog.get_logger``; the embedding process
decides on output by calling :func:`configure_logging` once at startup.
"""

import logging
import sys

import structlog


def configure_logging(
    component: str = "runmet",
    level: str = "INFO",
    json_output: bool = True,
) -> structlog.BoundLogger:
    """Configure structlog and return a logger bound to ``component``.

    JSON lines go to stdout by default; ``json_output=False`` switches to the
    coloured console renderer for local use.
    """
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(component=component)
