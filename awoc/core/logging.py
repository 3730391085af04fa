"""
AWOC — Structured Logging
===========================
structlog on top of stdlib logging.  Every line carries the app context
and, while one is bound, the correlation id of the receipt or task being
processed.  Credentials passed as log context are masked.

Event names are dotted (``task.started``, ``channel.request_timeout``);
context goes in keyword arguments.

Usage:
    from awoc.core.logging import get_logger
    logger = get_logger(__name__)
    logger.info("task.created", task_id="abc-123")
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from awoc.core.config import Settings, get_settings
from awoc.core.correlation import correlation_id_ctx

REDACTED = "***"

# context keys whose values never reach a log line
_SECRET_KEYS = frozenset(
    {"authorization", "password", "token", "worker_token", "api_key", "secret"}
)

# third-party loggers and the level they are capped at
_LIBRARY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _add_app_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    settings = get_settings()
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("environment", settings.environment.value)
    return event_dict


def _add_correlation_id(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Use the bound correlation id unless the call passed its own."""
    cid = correlation_id_ctx.get(None)
    if cid is not None:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask credential-like keys, including inside header/env dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in _SECRET_KEYS else v
                for k, v in value.items()
            }
    return event_dict


def _renderer(settings: Settings) -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_logging() -> None:
    """
    Configure structlog + stdlib logging.

    Call once per process, before the first log line; calling it again
    replaces the root handler.
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _add_app_context,
        _add_correlation_id,
        _redact_secrets,
    ]
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings),
            ],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    levels: dict[str, Any] = dict(_LIBRARY_LEVELS)
    levels["sqlalchemy.engine"] = (
        logging.INFO if settings.db_echo_sql else logging.WARNING
    )
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger bound to the given module name."""
    return structlog.get_logger(name)
