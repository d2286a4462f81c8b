"""Structured single-line key=value logging (structlog over the stdlib root logger)."""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

from webhook_service.settings import Settings

_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"})

_KEY_ORDER = ["timestamp", "level", "service", "logger", "event", "trace_id", "request_id"]


def _escape(value: Any) -> Any:
    return value.translate(_ESCAPES) if isinstance(value, str) else value


def replace_newlines_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Keep every entry on one line: escape control characters in values.

    Runs after ``format_exc_info`` so tracebacks are escaped as well. Lists
    and dicts (e.g. the safe request headers) are handled one level deep.
    """
    for key, value in event_dict.items():
        if isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) for item in value]
        elif isinstance(value, dict):
            event_dict[key] = {name: _escape(item) for name, item in value.items()}
        else:
            event_dict[key] = _escape(value)
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """For stdlib records that bypass structlog (aiohttp.access, asyncpg)."""

    def format(self, record: logging.LogRecord) -> str:
        return super().format(record).translate(_ESCAPES)


def configure_logging(settings: Settings) -> None:
    """Route stdlib and structlog output to stdout as ``key=value`` lines.

    Example line::

        timestamp=... level='info' service='webhook-service'
        logger='webhook_service.services.worker_pool'
        event='webhook_delivery succeeded' subscription_id='...' attempt=1
    """
    level = logging.getLevelName(settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # access lines go through the root handler only
    for name in ("aiohttp.access", "aiohttp.server"):
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = []
        stdlib_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            replace_newlines_processor,
            structlog.processors.KeyValueRenderer(key_order=_KEY_ORDER, drop_missing=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=settings.app_name)
