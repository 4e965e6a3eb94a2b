"""Core primitives shared by the execution and orchestration layers."""

from flowspine.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    FlowspineError,
    OrchestrationError,
    StepExecutionError,
    ValidationError,
    WorkflowError,
    categorize_error,
    is_retryable,
)
from flowspine.core.events import Event, EventBus, EventHandler
from flowspine.core.logging import (
    LogContext,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
)
from flowspine.core.settings import EngineSettings, get_settings

__all__ = [
    # errors
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "FlowspineError",
    "OrchestrationError",
    "StepExecutionError",
    "ValidationError",
    "WorkflowError",
    "categorize_error",
    "is_retryable",
    # events
    "Event",
    "EventBus",
    "EventHandler",
    # logging
    "LogContext",
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    # settings
    "EngineSettings",
    "get_settings",
]
