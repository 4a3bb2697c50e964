"""
Structured logging via structlog.

Events are snake_case with keyword fields; per-turn fields (session_id,
user_id) are bound once through contextvars and merged into every entry
logged during that turn.

Usage:
    from autonomous_rag.core.logging import get_logger
    log = get_logger(__name__)
    log.info("tool_dispatch", tool="db_query", session_id=session_id)
"""

import logging
import sys
from typing import Any

import structlog

from autonomous_rag.core.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog once at startup.
    development → colored console output at DEBUG
    anything else → JSON lines at INFO, tracebacks rendered as dicts
    """
    settings = settings or get_settings()
    is_dev = settings.environment == "development"

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if is_dev:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if is_dev else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )


def bind_turn(**fields: Any) -> None:
    """Bind per-turn fields (session_id, user_id) for every log entry until cleared."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**fields)


def get_logger(name: str = __name__):
    return structlog.get_logger(name)
