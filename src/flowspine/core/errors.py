"""
Structured error types for flowspine.

Every error raised by the engine extends :class:`FlowspineError` so callers
can catch the whole family with one ``except`` clause, and every error
carries enough metadata (category, retryable flag, context, cause) to be
logged as a structured event rather than a bare string.

Manifesto:
    - **Typed hierarchy:** structural, contract and operational errors are
      different classes, never one generic ``Exception``
    - **Explicit retry semantics:** each error knows whether retrying it
      makes sense; the retry policy reads ``retryable``
    - **Rich context:** workflow and step ids travel with the error
    - **Chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        FlowspineError  (category, retryable, context, cause)
          ├── ConfigError                  (CONFIG)
          ├── ValidationError              (VALIDATION)
          ├── OrchestrationError           (ORCHESTRATION)
          │     └── WorkflowError          ── see orchestration.exceptions
          └── ExecutionError               (EXECUTION)
                └── StepExecutionError     ── raised by step executors

Examples:
    >>> error = StepExecutionError("upstream returned 503")
    >>> error.retryable
    True
    >>> error.with_context(workflow="wf-1", step="fetch").context.step
    'fetch'

Tags:
    error-handling, exception-hierarchy, retry-logic, flowspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"                # Missing/invalid settings
    VALIDATION = "VALIDATION"        # Bad input, schema violations
    ORCHESTRATION = "ORCHESTRATION"  # Workflow structure and lifecycle
    EXECUTION = "EXECUTION"          # A step executor failed
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        workflow: Workflow identifier
        step: Step identifier within the workflow
        checkpoint: Checkpoint name, for checkpoint errors
        metadata: Additional key-value pairs
    """

    workflow: str | None = None
    step: str | None = None
    checkpoint: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["workflow", "step", "checkpoint"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class FlowspineError(Exception):
    """
    Base exception for all flowspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` to give
    sensible defaults for their domain; both can be overridden per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FlowspineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StepExecutionError("Failed").with_context(workflow="wf-1", step="fetch")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION / VALIDATION (never retryable)
# =============================================================================


class ConfigError(FlowspineError):
    """Invalid engine configuration."""

    default_category = ErrorCategory.CONFIG


class ValidationError(FlowspineError):
    """Invalid input data (e.g. a malformed workflow definition)."""

    default_category = ErrorCategory.VALIDATION


# =============================================================================
# ORCHESTRATION
# =============================================================================


class OrchestrationError(FlowspineError):
    """Workflow structure or lifecycle error."""

    default_category = ErrorCategory.ORCHESTRATION


class WorkflowError(OrchestrationError):
    """Base for errors about a specific workflow."""


class UnknownStepTypeError(WorkflowError):
    """Raised when a step's type tag has no registered executor."""

    def __init__(self, step_type: str, available: list[str] | None = None):
        self.step_type = step_type
        self.available = available or []
        super().__init__(
            f"No executor registered for step type {step_type!r}. "
            f"Available types: {self.available or 'none'}"
        )


# =============================================================================
# EXECUTION
# =============================================================================


class ExecutionError(FlowspineError):
    """A unit of work failed while running."""

    default_category = ErrorCategory.EXECUTION


class StepExecutionError(ExecutionError):
    """
    Raised by step executors to report a failure.

    Retryable by default; pass ``retryable=False`` for failures that no
    amount of retrying can fix, and the engine fails the step immediately.
    """

    default_retryable = True


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may be retried.

    Errors that don't declare a ``retryable`` attribute are treated as
    retryable: an executor raising a plain exception gets the full retry
    budget.
    """
    return bool(getattr(error, "retryable", True))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Return the category of an error, defaulting to EXECUTION for foreign ones."""
    if isinstance(error, FlowspineError):
        return error.category
    return ErrorCategory.EXECUTION


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FlowspineError",
    "ConfigError",
    "ValidationError",
    "OrchestrationError",
    "WorkflowError",
    "UnknownStepTypeError",
    "ExecutionError",
    "StepExecutionError",
    "is_retryable",
    "categorize_error",
]
