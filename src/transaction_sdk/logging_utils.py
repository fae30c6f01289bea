"""Structured logging configuration built on structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

__all__ = ["configure_logging", "token_prefix"]


def token_prefix(token: str, length: int = 10) -> str:
    """Return a short, log-safe prefix of a token envelope."""
    return token[:length] + "..." if len(token) > length else token


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog on top of the standard library root logger.

    Args:
        level: Minimum log level name.
        json_logs: Render JSON lines instead of the console renderer.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    # Driver chatter
    for noisy in ("asyncio", "aiosqlite", "sqlalchemy.engine", "pymongo"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).debug("logging_configured", log_level=level, json_logs=json_logs)
