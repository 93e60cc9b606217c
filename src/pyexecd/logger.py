"""Structured logging singleton.

Reads os.environ directly: the logger must initialize before pydantic
Settings so config errors can be logged. Long-lived processes (daemons and
their connections) log through ``bind_process`` so every line carries the
pid it concerns.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # Configure stdlib root logger first so structlog's filter_by_level works
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("pyexecd")


logger = _setup_logging()


def bind_process(pid: int | None, **context: Any) -> structlog.stdlib.BoundLogger:
    """Logger whose every event names the process *pid* plus *context*."""
    return logger.bind(pid=pid, **context)


def set_level(level_name: str) -> None:
    """Apply a level from config after startup (LOG_LEVEL still wins if set)."""
    if "LOG_LEVEL" in os.environ:
        return
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))
