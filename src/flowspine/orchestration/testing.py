"""Test Harness — utilities for testing workflows.

Manifesto:
Testing a scheduler against wall-clock timers and threads is slow and flaky.
This module provides a manual clock, executor doubles and assertion helpers
so that a whole workflow, retries included, runs deterministically inside a
single test function.

ARCHITECTURE
────────────
::

    Time:
      ManualClock               → timers fire only when the test advances time

    Executor doubles (StepExecutor implementations):
      StubExecutor              → always succeeds (configurable output)
      FailingExecutor           → fails N times (or always), then succeeds
      ScriptedExecutor          → plays back a list of outputs / exceptions

    Assertion helpers:
      assert_workflow_completed(workflow)
      assert_workflow_failed(workflow, step=None)
      assert_step_status(workflow, step_id, status)
      assert_event_types(events, expected)

    Factories:
      make_engine(...)          → engine with InlineDispatcher + ManualClock

Example::

    from flowspine.orchestration.testing import (
        FailingExecutor,
        assert_workflow_failed,
        make_engine,
    )

    def test_step_gives_up():
        engine = make_engine(executors={"flaky": FailingExecutor()})
        engine.create_workflow("wf", "wf", [{"id": "x", "type": "flaky"}])
        engine.start_workflow("wf")
        engine.clock.run_until_idle()
        assert_workflow_failed(engine.get_workflow("wf"), step="x")

Tags:
    flowspine, orchestration, testing, harness, assertions

Doc-Types:
    api-reference
"""

from __future__ import annotations

import heapq
import itertools
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from flowspine.core.errors import StepExecutionError
from flowspine.core.events import Event
from flowspine.core.settings import EngineSettings
from flowspine.execution.dispatch import CancellationToken, InlineDispatcher
from flowspine.execution.registry import ExecutorRegistry, StepExecutor, StepFunction
from flowspine.orchestration.engine import WorkflowEngine
from flowspine.orchestration.models import StepStatus, Workflow, WorkflowStatus

# ---------------------------------------------------------------------------
# Manual clock
# ---------------------------------------------------------------------------


class _ManualTimer:
    def __init__(self, due: datetime, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: _ManualTimer) -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class ManualClock:
    """Clock whose time moves only when the test says so.

    Timers scheduled with ``call_later`` fire, in due order, during
    :meth:`advance` or :meth:`run_until_idle`, on the calling thread.

    Parameters
    ----------
    start
        Initial time. Defaults to 2026-01-01T00:00:00Z.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self.delays: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        with self._lock:
            timer = _ManualTimer(self._now + timedelta(seconds=delay), next(self._seq), callback)
            heapq.heappush(self._timers, timer)
            self.delays.append(delay)
            return timer

    @property
    def pending_timers(self) -> int:
        """Scheduled timers that are neither fired nor cancelled."""
        with self._lock:
            return sum(1 for t in self._timers if not t.cancelled)

    def next_due(self) -> datetime | None:
        with self._lock:
            live = [t.due for t in self._timers if not t.cancelled]
        return min(live) if live else None

    def advance(self, seconds: float) -> int:
        """Move time forward, firing every timer that falls due. Returns the number fired."""
        with self._lock:
            target = self._now + timedelta(seconds=seconds)
        fired = 0
        while True:
            timer = self._pop_due(target)
            if timer is None:
                break
            timer.callback()
            fired += 1
        with self._lock:
            self._now = max(self._now, target)
        return fired

    def run_until_idle(self, max_timers: int = 1000) -> int:
        """Fire timers (jumping time forward) until none are left."""
        fired = 0
        while fired < max_timers:
            due = self.next_due()
            if due is None:
                return fired
            with self._lock:
                gap = max((due - self._now).total_seconds(), 0.0)
            fired += self.advance(gap)
        raise RuntimeError(f"Clock still busy after {max_timers} timers")

    def _pop_due(self, target: datetime) -> _ManualTimer | None:
        with self._lock:
            while self._timers:
                timer = self._timers[0]
                if timer.cancelled:
                    heapq.heappop(self._timers)
                    continue
                if timer.due > target:
                    return None
                heapq.heappop(self._timers)
                self._now = max(self._now, timer.due)
                return timer
            return None


# ---------------------------------------------------------------------------
# Executor doubles
# ---------------------------------------------------------------------------


class StubExecutor:
    """Executor that always succeeds.

    Parameters
    ----------
    output
        Mapping returned on every call (a copy), or None.

    Every call is recorded in ``calls`` as ``(config, data)``.
    """

    def __init__(self, output: Mapping[str, Any] | None = None) -> None:
        self._output = dict(output) if output is not None else None
        self.calls: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self._lock = threading.Lock()

    def execute(
        self,
        config: dict[str, Any],
        data: Mapping[str, Any],
        cancel: CancellationToken,
    ) -> Mapping[str, Any] | None:
        with self._lock:
            self.calls.append((dict(config), dict(data)))
        return dict(self._output) if self._output is not None else None

    @property
    def call_count(self) -> int:
        return len(self.calls)


class FailingExecutor(StubExecutor):
    """Executor that fails a number of times, then succeeds.

    Parameters
    ----------
    error
        Message of the raised :class:`StepExecutionError`.
    fail_times
        How many calls fail before calls start succeeding. ``None`` fails forever.
    retryable
        Passed to the raised error; ``False`` stops retries immediately.
    output
        Returned once calls succeed.
    """

    def __init__(
        self,
        error: str = "step failed",
        fail_times: int | None = None,
        retryable: bool = True,
        output: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(output)
        self.error = error
        self.fail_times = fail_times
        self.retryable = retryable

    def execute(
        self,
        config: dict[str, Any],
        data: Mapping[str, Any],
        cancel: CancellationToken,
    ) -> Mapping[str, Any] | None:
        result = super().execute(config, data, cancel)
        if self.fail_times is None or self.call_count <= self.fail_times:
            raise StepExecutionError(self.error, retryable=self.retryable)
        return result


class ScriptedExecutor(StubExecutor):
    """Executor that plays back a script, one entry per call.

    Entries that are exceptions are raised, everything else is returned. The
    last entry repeats once the script runs out.

    Example::

        executor = ScriptedExecutor([TimeoutError("slow"), {"rows": 42}])
    """

    def __init__(self, script: Sequence[Mapping[str, Any] | BaseException | None]) -> None:
        if not script:
            raise ValueError("script must not be empty")
        super().__init__()
        self._script = list(script)

    def execute(
        self,
        config: dict[str, Any],
        data: Mapping[str, Any],
        cancel: CancellationToken,
    ) -> Mapping[str, Any] | None:
        super().execute(config, data, cancel)
        entry = self._script[min(self.call_count, len(self._script)) - 1]
        if isinstance(entry, BaseException):
            raise entry
        return dict(entry) if entry is not None else None


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


class WorkflowAssertionError(AssertionError):
    """Raised when a workflow assertion fails.

    Carries the workflow so the failure message shows where it stood.
    """

    def __init__(self, message: str, workflow: Workflow) -> None:
        self.workflow = workflow
        steps = ", ".join(f"{s.id}={s.status.value}" for s in workflow.steps)
        super().__init__(
            f"{message}\n  Workflow: {workflow.id}\n  Status: {workflow.status.value}\n  Steps: {steps}"
        )


def assert_workflow_completed(workflow: Workflow | None) -> None:
    """Assert that a workflow completed with every step completed."""
    if workflow is None:
        raise AssertionError("Workflow not found")
    if workflow.status != WorkflowStatus.COMPLETED:
        raise WorkflowAssertionError(f"Expected COMPLETED, got {workflow.status.value}", workflow)
    if not workflow.all_steps_completed:
        raise WorkflowAssertionError("Workflow COMPLETED but not every step is", workflow)


def assert_workflow_failed(
    workflow: Workflow | None,
    step: str | None = None,
    error_contains: str | None = None,
) -> None:
    """Assert that a workflow failed, optionally at a given step.

    Parameters
    ----------
    workflow
        The workflow (a copy from ``get_workflow``).
    step
        Step expected to be ``failed``.
    error_contains
        Substring expected in that step's error.
    """
    if workflow is None:
        raise AssertionError("Workflow not found")
    if workflow.status != WorkflowStatus.FAILED:
        raise WorkflowAssertionError(f"Expected FAILED, got {workflow.status.value}", workflow)
    if step is None:
        return
    failed = workflow.get_step(step)
    if failed is None or failed.status != StepStatus.FAILED:
        raise WorkflowAssertionError(f"Expected step '{step}' to be failed", workflow)
    if error_contains and error_contains not in (failed.error or ""):
        raise WorkflowAssertionError(
            f"Expected error containing '{error_contains}', got: {failed.error}",
            workflow,
        )


def assert_step_status(workflow: Workflow, step_id: str, status: StepStatus | str) -> None:
    """Assert one step's status."""
    step = workflow.get_step(step_id)
    if step is None:
        raise WorkflowAssertionError(f"Step '{step_id}' not found", workflow)
    if step.status != StepStatus(status):
        raise WorkflowAssertionError(
            f"Expected step '{step_id}' to be {StepStatus(status).value}, got {step.status.value}",
            workflow,
        )


def assert_event_types(events: Iterable[Event], expected: Sequence[str]) -> None:
    """Assert the exact sequence of event types."""
    actual = [e.event_type for e in events]
    if actual != list(expected):
        raise AssertionError(f"Event types differ\n  expected: {list(expected)}\n  actual:   {actual}")


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def make_engine(
    executors: Mapping[str, StepExecutor | StepFunction] | None = None,
    *,
    registry: ExecutorRegistry | None = None,
    clock: ManualClock | None = None,
    settings: EngineSettings | None = None,
    **settings_overrides: Any,
) -> WorkflowEngine:
    """Create a deterministic engine for tests.

    Steps run inline on the calling thread and backoff timers wait on a
    :class:`ManualClock` (reachable as ``engine.clock``).

    Parameters
    ----------
    executors
        Step type → executor (object or function) to register.
    registry
        Registry to register into. Defaults to a fresh one.
    clock
        Clock to use. Defaults to a fresh ``ManualClock``.
    settings
        Explicit settings; otherwise built from ``settings_overrides``.
    """
    registry = registry if registry is not None else ExecutorRegistry()
    for step_type, executor in (executors or {}).items():
        registry.register(step_type, executor)
    return WorkflowEngine(
        registry,
        settings=settings or EngineSettings(**settings_overrides),
        dispatcher=InlineDispatcher(),
        clock=clock or ManualClock(),
    )


__all__ = [
    "FailingExecutor",
    "ManualClock",
    "ScriptedExecutor",
    "StubExecutor",
    "WorkflowAssertionError",
    "assert_event_types",
    "assert_step_status",
    "assert_workflow_completed",
    "assert_workflow_failed",
    "make_engine",
]
