"""
Chime Logging - structured events for lease handovers and deliveries.

Every component logs snake_case events with key/value fields through
structlog. A replica's log stream should answer three questions on its own:
who held the lease, which term it was in, and what happened to each
reminder.

Processor chain::

    TimeStamper(iso, utc)          → timestamp
    merge_contextvars              → term=..., anything bound via LogContext
    add_log_level, add_logger_name
    set_exc_info
    service_fields(service)        → service.name
    ── json ──────────────────────────────────────────────
    ecs_field_names                → @timestamp, log.level
    format_exc_info
    JSONRenderer
    ── console ───────────────────────────────────────────
    ConsoleRenderer(colors=tty)

Usage::

    configure_logging(level="INFO", json_format=None, service="chime")
    logger = get_logger(__name__)
    logger.info("lease_acquired", key="chime:leader", token="9f2c...")

    with LogContext(term=3):
        logger.info("supervisor_leading")      # includes term=3

Tags:
    logging, structlog, contextvars, ecs, chime
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# redis-py logs connection chatter through stdlib logging
_NOISY_LIBRARIES = ("redis",)


def _service_fields(service: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return add_service


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for plain, ecs in (("timestamp", "@timestamp"), ("level", "log.level")):
        if plain in event_dict:
            event_dict[ecs] = event_dict.pop(plain)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "chime",
    add_timestamp: bool = True,
) -> None:
    """Install the process-wide structlog configuration.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON when True, console when False, JSON unless stdout
            is a TTY when None
        service: Value of the ``service.name`` field
        add_timestamp: Prepend an ISO-8601 UTC timestamp
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    interactive = sys.stdout.isatty()
    if json_format is None:
        json_format = not interactive

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.set_exc_info,
        _service_fields(service),
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors += [
            _ecs_field_names,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=interactive))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    if numeric_level > logging.DEBUG:
        for name in _NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger, usually ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every later log call on this thread."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    On exit the previous values come back, so nested blocks that bind the
    same key (a second leadership term, say) do not wipe the outer one.
    """

    def __init__(self, **kwargs: Any):
        self._fields = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *args) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
