"""Structured logging setup for the stagepack CLI."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def configure_logging(*, log_level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog on top of stdlib logging.

    Log lines go to stderr so the stdout of the CLI (JSON results, rendered
    Dockerfiles, the packaged executable's output) stays clean.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        json_format: Render JSON lines instead of the console format.
    """
    processors: list[Any] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )
