"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(*, verbose: bool = False, json_logs: bool = False) -> None:
    """Configure structlog for console or JSON output.

    Args:
        verbose: If True, set log level to DEBUG. Otherwise INFO.
        json_logs: Render one JSON object per line instead of the dev console
            format. Meant for running the server under a log collector.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    # uvicorn and httpx log through stdlib
    logging.basicConfig(level=log_level, stream=sys.stderr, format="%(message)s")
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
