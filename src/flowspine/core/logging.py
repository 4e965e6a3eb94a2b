"""
Structured logging for flowspine.

Manifesto:
    A workflow engine is only debuggable if every transition it makes can be
    found again in the logs. Log lines are events (``"step.retry"``) with
    key/value fields (``workflow=..., step=..., attempt=...``), never
    formatted prose, so they can be filtered and aggregated.

    - **Structured:** JSON output for log aggregation
    - **Correlated:** workflow and step ids bound through contextvars
    - **Flexible:** colored console output for development

Architecture:
    ::

        configure_logging_from_settings(EngineSettings())   # FLOWSPINE_LOG_LEVEL, FLOWSPINE_LOG_JSON
            ↓
        configure_logging(level="INFO", json_format=None, service="flowspine")
            ↓
        structlog processor chain:
            TimeStamper → merge_contextvars → add_log_level
            → StackInfoRenderer → set_exc_info → service metadata
            → JSONRenderer (or ConsoleRenderer on a tty)

        logger = get_logger(__name__)
        logger.info("workflow.start", workflow="wf-1", step_count=3)

Tags:
    logging, structlog, observability, flowspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from flowspine.core.settings import EngineSettings, get_settings

# Store service name for metadata
_SERVICE_NAME = "flowspine"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "flowspine",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stdout.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def configure_logging_from_settings(settings: EngineSettings | None = None) -> None:
    """Configure logging from ``log_level`` and ``log_json`` in the engine settings.

    Args:
        settings: Settings to read (``get_settings()`` if omitted)
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs on this thread/task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(workflow="wf-1", step="fetch"):
            logger.info("step.dispatch")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
