"""Execution layer: how step attempts run, retry and wait.

Components:
- ``retry``    — RetryPolicy (attempt → continue/stop, attempt → backoff)
- ``clock``    — Clock protocol and the wall-clock implementation
- ``dispatch`` — inline and thread-pool dispatchers, CancellationToken
- ``registry`` — step type → executor lookup
"""

from flowspine.execution.clock import Clock, SystemClock, TimerHandle
from flowspine.execution.dispatch import (
    CancellationToken,
    Dispatcher,
    InlineDispatcher,
    ThreadPoolDispatcher,
)
from flowspine.execution.registry import (
    ExecutorRegistry,
    FunctionExecutor,
    StepExecutor,
    StepFunction,
)
from flowspine.execution.retry import RetryPolicy

__all__ = [
    "CancellationToken",
    "Clock",
    "Dispatcher",
    "ExecutorRegistry",
    "FunctionExecutor",
    "InlineDispatcher",
    "RetryPolicy",
    "StepExecutor",
    "StepFunction",
    "SystemClock",
    "ThreadPoolDispatcher",
    "TimerHandle",
]
