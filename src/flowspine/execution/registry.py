"""Executor Registry — step type → executor lookup.

Manifesto:
The engine never interprets what a step *does*; it only sequences and
retries. Each step carries a type tag, and the registry maps that tag to
the executor that knows how to run it. Resolution happens once, when the
workflow is created, so a typo in a type tag is a structural error at
creation time rather than a runtime failure halfway through a run.

ARCHITECTURE
────────────
::

    ExecutorRegistry
      ├── .register(step_type, executor)  ─ store executor (object or callable)
      ├── .executor(step_type)            ─ decorator form of register
      ├── .resolve(step_type)             ─ lookup, UnknownStepTypeError if absent
      ├── .has(step_type)                 ─ existence check
      └── .list_types()                   ─ registered tags

    StepExecutor (protocol)
      .execute(config, data, cancel) -> dict | None

Plain functions with the ``(config, data, cancel)`` signature are wrapped
in :class:`FunctionExecutor` on registration.

Tags:
    flowspine, execution, registry, executors

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from flowspine.core.errors import UnknownStepTypeError
from flowspine.execution.dispatch import CancellationToken

StepFunction = Callable[[dict[str, Any], Mapping[str, Any], CancellationToken], "Mapping[str, Any] | None"]


@runtime_checkable
class StepExecutor(Protocol):
    """Runs one step attempt.

    Args (of ``execute``):
        config: The step's own configuration
        data: Read-only snapshot of the workflow data at dispatch time
        cancel: Cooperative cancellation signal

    Returns a mapping merged into workflow data, or None. Raising any
    exception marks the attempt failed.
    """

    def execute(
        self,
        config: dict[str, Any],
        data: Mapping[str, Any],
        cancel: CancellationToken,
    ) -> Mapping[str, Any] | None:
        ...


class FunctionExecutor:
    """Adapt a plain function to the :class:`StepExecutor` protocol."""

    def __init__(self, fn: StepFunction) -> None:
        self._fn = fn
        self.__name__ = getattr(fn, "__name__", type(fn).__name__)

    def execute(
        self,
        config: dict[str, Any],
        data: Mapping[str, Any],
        cancel: CancellationToken,
    ) -> Mapping[str, Any] | None:
        return self._fn(config, data, cancel)

    def __repr__(self) -> str:
        return f"FunctionExecutor({self.__name__})"


class ExecutorRegistry:
    """Injectable executor registry.

    Example:
        >>> registry = ExecutorRegistry()
        >>>
        >>> @registry.executor("http")
        ... def call_api(config, data, cancel):
        ...     return {"status": 200}
        >>>
        >>> registry.resolve("http").execute({}, {}, CancellationToken())
        {'status': 200}
    """

    def __init__(self) -> None:
        self._executors: dict[str, StepExecutor] = {}
        self._descriptions: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def register(
        self,
        step_type: str,
        executor: StepExecutor | StepFunction,
        description: str | None = None,
    ) -> StepExecutor:
        """Register an executor for a step type, replacing any previous one.

        Args:
            step_type: Type tag used by steps
            executor: A StepExecutor, or a function ``(config, data, cancel)``
            description: Optional description for documentation
        """
        if not step_type:
            raise ValueError("step_type must be a non-empty string")
        if not isinstance(executor, StepExecutor):
            if not callable(executor):
                raise TypeError(f"Executor for {step_type!r} is neither a StepExecutor nor callable")
            executor = FunctionExecutor(executor)
        with self._lock:
            self._executors[step_type] = executor
            self._descriptions[step_type] = description
        return executor

    def executor(self, step_type: str, description: str | None = None) -> Callable[[StepFunction], StepFunction]:
        """Decorator registering a function as the executor for ``step_type``."""

        def decorator(fn: StepFunction) -> StepFunction:
            self.register(step_type, fn, description=description)
            return fn

        return decorator

    def resolve(self, step_type: str) -> StepExecutor:
        """Get the executor for a step type.

        Raises:
            UnknownStepTypeError: If nothing is registered for the tag
        """
        with self._lock:
            executor = self._executors.get(step_type)
            if executor is None:
                raise UnknownStepTypeError(step_type, sorted(self._executors))
            return executor

    def has(self, step_type: str) -> bool:
        """Check if an executor exists for the tag."""
        with self._lock:
            return step_type in self._executors

    def unregister(self, step_type: str) -> bool:
        """Remove an executor. Returns False if none was registered."""
        with self._lock:
            self._descriptions.pop(step_type, None)
            return self._executors.pop(step_type, None) is not None

    def list_types(self) -> list[str]:
        """Registered step types, sorted."""
        with self._lock:
            return sorted(self._executors)

    def describe(self) -> dict[str, str | None]:
        """Step type → description mapping."""
        with self._lock:
            return dict(self._descriptions)

    def __len__(self) -> int:
        return len(self._executors)

    def __contains__(self, step_type: str) -> bool:
        return self.has(step_type)


__all__ = ["ExecutorRegistry", "FunctionExecutor", "StepExecutor", "StepFunction"]
