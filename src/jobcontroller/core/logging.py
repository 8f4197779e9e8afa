"""
Structured logging for the job controller.

Manifesto:
    A reconciliation loop is only debuggable through its logs. Every
    decision (start, upgrade, retire, notify, ack discarded) is emitted as a
    named event with the job id, feature set reference and version attached
    as fields, so that a stale job can be traced across polling intervals.
    During a rolling upgrade two controller versions run side by side, so
    every line also carries the version of the controller that wrote it.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None, controller_version="1.4.0")
            │
            ▼
        structlog processor chain:
          1. TimeStamper(iso)
          2. merge_contextvars      (tick number bound via LogContext)
          3. add_log_level
          4. _add_controller_metadata
          5. _ecs_field_names       (JSON only)
          6. JSONRenderer  (or ConsoleRenderer on a tty)

Examples:
    >>> from jobcontroller.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True, controller_version="1.4.0")
    >>> logger = get_logger(__name__)
    >>> logger.info("job_started", job_id="kafka-1a2b3c", stores=2)

Tags:
    logging, structlog, observability, jobcontroller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_metadata: dict[str, str] = {"service.name": "jobcontroller"}

# ECS names for the fields structlog produces
_ECS_RENAMES = {"timestamp": "@timestamp", "level": "log.level", "logger_name": "log.logger"}


def _add_controller_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, value in _metadata.items():
        event_dict.setdefault(key, value)
    return event_dict


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for old, new in _ECS_RENAMES.items():
        if old in event_dict:
            event_dict[new] = event_dict.pop(old)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "jobcontroller",
    controller_version: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        controller_version: Added as ``service.version`` to every event
    """
    _metadata.clear()
    _metadata["service.name"] = service
    if controller_version:
        _metadata["service.version"] = controller_version

    if json_format is None:
        json_format = not sys.stdout.isatty()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_controller_metadata,
    ]
    if json_format:
        processors += [
            _ecs_field_names,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and confluent_kafka log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``).

    The name is bound as the ``logger_name`` field.
    """
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(logger_name=name)


class LogContext:
    """Binds fields to every event logged inside the block.

    Backed by contextvars, so concurrent ticks and ack handlers running on
    the same loop each keep their own fields.

    Example:
        async with LogContext(tick=42):
            logger.info("tick_started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Any = None

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


__all__ = [
    "LogContext",
    "configure_logging",
    "get_logger",
]
