"""Workflow Engine — registry, state machine and scheduling loop.

Manifesto:
    The engine sequences and retries; it never interprets what a step does.
    Each workflow is driven by a *pump*: a loop that claims every eligible
    step, dispatches it, and runs again whenever a step settles. Every
    decision about one workflow (which steps are eligible, what status they
    move to, which history entry and event that produces) is taken under that
    workflow's lock, so no two completions ever see a half-updated view of
    their siblings, and events reach observers in exactly the order the
    transitions happened.

ARCHITECTURE
────────────
::

    WorkflowEngine
      ├── registry lock ─ guards id → _WorkflowRun
      └── _WorkflowRun (one per workflow)
            ├── RLock + Condition  ─ selection, mutation, history, events
            ├── DependencyGraph    ─ eligibility, cycles, impact
            ├── executors          ─ resolved once, at create_workflow
            ├── tokens / timers    ─ in-flight dispatches and pending backoffs
            └── generations        ─ per-step counter; stale results are dropped

    start_workflow ─► _pump ─► claim eligible (under lock) ─► Dispatcher.submit(job)
                        ▲                                           │
                        │          job: executor.execute(...)       │
                        └──── success: merge data, complete ◄───────┘
                              failure: RetryPolicy
                                 ├── retry → RETRYING, Clock.call_later(backoff)
                                 │           timer → PENDING → _pump
                                 └── stop  → step FAILED, workflow FAILED

    The pump exits atomically (``pumping`` flag under the lock), so a step
    settling on any thread either joins the running pump or starts a new one;
    with the inline dispatcher the call stack stays two frames deep however
    long the workflow is.

Events (``Event.event_type``): ``created``, ``state:changed``,
``step:started``, ``step:completed``, ``step:failed``, ``step:retry``,
``checkpoint:created``, ``workflow:rollback``, ``workflow:completed``,
``workflow:failed``, ``workflow:removed``, ``steps:reset``.

Example::

    from flowspine import WorkflowEngine, WorkflowStatus

    engine = WorkflowEngine()

    @engine.registry.executor("echo")
    def echo(config, data, cancel):
        return {config["key"]: config["value"]}

    engine.create_workflow("wf-1", "demo", [
        {"id": "a", "type": "echo", "config": {"key": "a", "value": 1}},
        {"id": "b", "type": "echo", "config": {"key": "b", "value": 2},
         "dependencies": ["a"]},
    ])
    engine.start_workflow("wf-1")
    workflow = engine.wait_for("wf-1", timeout=10)
    assert workflow.status == WorkflowStatus.COMPLETED

Tags:
    flowspine, orchestration, engine, DAG, retry, checkpoint, events

Doc-Types:
    api-reference
"""

from __future__ import annotations

import copy
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from functools import partial
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from flowspine.core.errors import (
    OrchestrationError,
    StepExecutionError,
    WorkflowError,
    categorize_error,
)
from flowspine.core.events import Event, EventBus, EventHandler
from flowspine.core.logging import LogContext, get_logger
from flowspine.core.settings import EngineSettings, get_settings
from flowspine.execution.clock import Clock, SystemClock, TimerHandle
from flowspine.execution.dispatch import CancellationToken, Dispatcher, ThreadPoolDispatcher
from flowspine.execution.registry import ExecutorRegistry, StepExecutor
from flowspine.execution.retry import RetryPolicy
from flowspine.orchestration.checkpoints import Checkpoint, CheckpointStore
from flowspine.orchestration.exceptions import (
    DuplicateStepError,
    DuplicateWorkflowError,
    InvalidStateError,
    StepNotFoundError,
    WorkflowNotFoundError,
)
from flowspine.orchestration.graph import DependencyGraph
from flowspine.orchestration.models import (
    HistoryEntry,
    Step,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowStatus,
    validate_step_transition,
    validate_workflow_transition,
)

if TYPE_CHECKING:
    from flowspine.orchestration.workflow_yaml import WorkflowSpec

logger = get_logger(__name__)

StepInput = StepDefinition | Mapping[str, Any]


class _WorkflowRun:
    """Engine-private state of one registered workflow."""

    def __init__(
        self,
        workflow: Workflow,
        graph: DependencyGraph,
        executors: dict[str, StepExecutor],
    ) -> None:
        self.workflow = workflow
        self.graph = graph
        self.executors = executors
        self.lock = threading.RLock()
        self.changed = threading.Condition(self.lock)
        self.generations: dict[str, int] = {step.id: 0 for step in workflow.steps}
        self.tokens: dict[str, CancellationToken] = {}
        self.timers: dict[str, TimerHandle] = {}
        self.sequence = 0
        self.pumping = False
        self.removed = False


class WorkflowEngine:
    """Dependency-aware workflow engine with checkpoints and bounded retry.

    Args:
        registry: Step type → executor lookup (a fresh one if omitted)
        settings: Engine settings (``get_settings()`` if omitted)
        dispatcher: Where executor calls run (a thread pool if omitted)
        clock: Time and backoff timers (wall clock if omitted)
        retry_policy: Retry decisions (built from settings if omitted)
        events: Event bus to publish on (a fresh one if omitted)
    """

    def __init__(
        self,
        registry: ExecutorRegistry | None = None,
        *,
        settings: EngineSettings | None = None,
        dispatcher: Dispatcher | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.registry = registry if registry is not None else ExecutorRegistry()
        self._owns_dispatcher = dispatcher is None
        self._dispatcher = dispatcher or ThreadPoolDispatcher(max_workers=self._settings.max_workers)
        self._clock = clock or SystemClock()
        self._retry = retry_policy or RetryPolicy.from_settings(self._settings)
        self._events = events if events is not None else EventBus()
        self._checkpoints = CheckpointStore()

        self._runs: dict[str, _WorkflowRun] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._events_published = 0
        self._started_at = self._clock.now()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Workflow lifecycle
    # =========================================================================

    def create_workflow(
        self,
        workflow_id: str,
        name: str,
        steps: Iterable[StepInput],
        initial_data: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Workflow:
        """Validate and register a workflow in ``created`` status.

        Steps may be :class:`StepDefinition` objects or plain dicts with
        ``id``, ``type``, ``dependencies``, ``name``, ``config`` and
        ``max_attempts`` keys.

        Raises:
            DuplicateWorkflowError: ``workflow_id`` is already registered
            DuplicateStepError: Two steps share an id
            UnknownDependencyError: A step depends on a step that doesn't exist
            CyclicDependencyError: The dependencies form a cycle
            UnknownStepTypeError: A step type has no registered executor
        """
        self._check_open()
        if self._lookup(workflow_id) is not None:
            raise DuplicateWorkflowError(workflow_id)

        definitions = [
            step if isinstance(step, StepDefinition) else StepDefinition.from_dict(dict(step), index)
            for index, step in enumerate(steps)
        ]

        graph = DependencyGraph()
        for definition in definitions:
            if definition.id in graph:
                raise DuplicateStepError(definition.id, workflow_id)
            graph.add_node(definition.id, definition.dependencies)
        graph.validate(workflow_id)

        executors: dict[str, StepExecutor] = {}
        for definition in definitions:
            try:
                executors[definition.id] = self.registry.resolve(definition.type)
            except WorkflowError as e:
                raise e.with_context(workflow=workflow_id, step=definition.id)

        now = self._clock.now()
        workflow = Workflow(
            id=workflow_id,
            name=name or workflow_id,
            steps=[Step.from_definition(d) for d in definitions],
            data=copy.deepcopy(dict(initial_data or {})),
            history=deque(maxlen=self._settings.max_history),
            metadata={"created_by": "system", **copy.deepcopy(dict(metadata or {}))},
            created_at=now,
        )
        workflow.metadata.setdefault("created_at", now.isoformat())
        run = _WorkflowRun(workflow, graph, executors)

        with self._lock:
            if workflow_id in self._runs:
                raise DuplicateWorkflowError(workflow_id)
            self._runs[workflow_id] = run

        with run.lock:
            self._record(run, None, WorkflowStatus.CREATED.value)
            self._emit(run, "created", name=workflow.name, steps=workflow.step_ids())
            logger.info(
                "workflow.created",
                workflow=workflow_id,
                name=workflow.name,
                step_count=len(workflow.steps),
            )
            return workflow.snapshot()

    def create_workflow_from_spec(self, spec: WorkflowSpec) -> Workflow:
        """Register a workflow from a validated declarative definition."""
        return self.create_workflow(**spec.to_create_kwargs())

    def start_workflow(self, workflow_id: str) -> None:
        """Start a created workflow, or resume a paused one.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidStateError: Workflow is neither created nor paused
        """
        self._check_open()
        run = self._require(workflow_id)
        with run.lock:
            workflow = run.workflow
            if workflow.status not in (WorkflowStatus.CREATED, WorkflowStatus.PAUSED):
                raise InvalidStateError(workflow_id, workflow.status.value, "start")

            resuming = workflow.status == WorkflowStatus.PAUSED
            if not resuming:
                run.graph.validate(workflow_id)
                workflow.started_at = self._clock.now()
            self._transition(run, WorkflowStatus.RUNNING, action="resume" if resuming else "start")
            logger.info(
                "workflow.resume" if resuming else "workflow.start",
                workflow=workflow_id,
                step_count=len(workflow.steps),
            )
            self._check_completion(run)
        self._pump(run)

    def pause_workflow(self, workflow_id: str) -> None:
        """Stop claiming new steps; steps already in flight finish.

        A result that arrives while paused is processed as usual: success
        completes the step, failure goes through the retry policy and may
        fail the workflow. Backoffs keep running, but a step whose backoff
        elapses waits in pending until the workflow is resumed.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            InvalidStateError: Workflow is not running
        """
        run = self._require(workflow_id)
        with run.lock:
            if run.workflow.status != WorkflowStatus.RUNNING:
                raise InvalidStateError(workflow_id, run.workflow.status.value, "pause")
            self._transition(run, WorkflowStatus.PAUSED, action="pause")
            logger.info("workflow.pause", workflow=workflow_id, in_flight=len(run.tokens))

    def remove_workflow(self, workflow_id: str) -> bool:
        """Drop a workflow from the registry. Returns False if it wasn't there.

        In-flight dispatches are cancelled and their results discarded.
        """
        with self._lock:
            run = self._runs.pop(workflow_id, None)
        if run is None:
            return False
        with run.lock:
            run.removed = True
            self._supersede(run, run.workflow.step_ids(), "removed")
            self._emit(run, "workflow:removed", status=run.workflow.status.value)
            run.changed.notify_all()
        logger.info("workflow.removed", workflow=workflow_id)
        return True

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def create_checkpoint(self, workflow_id: str, name: str) -> Checkpoint:
        """Snapshot the workflow's step states and data under ``name``.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            DuplicateCheckpointError: ``name`` is already used in this workflow
        """
        run = self._require(workflow_id)
        with run.lock:
            checkpoint = self._checkpoints.capture(run.workflow, name, now=self._clock.now())
            self._emit(
                run,
                "checkpoint:created",
                checkpoint=name,
                steps={sid: status.value for sid, status in checkpoint.step_statuses().items()},
            )
            logger.info("checkpoint.created", workflow=workflow_id, checkpoint=name)
            return checkpoint

    def rollback_to_checkpoint(self, workflow_id: str, name: str | None = None) -> None:
        """Restore a checkpoint and resume scheduling from it.

        ``name=None`` rolls back to the most recent checkpoint. The workflow
        goes back to ``running`` whatever its status was; the checkpoint list
        is kept. Dispatches in flight at the time are cancelled and their
        results discarded. If the checkpoint holds a ``failed`` step the
        workflow fails again straight away.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            CheckpointNotFoundError: No such checkpoint (or none at all)
        """
        self._check_open()
        run = self._require(workflow_id)
        with run.lock:
            workflow = run.workflow
            restored = self._checkpoints.restore(workflow, name)
            checkpoint_name = restored.checkpoint.name

            self._supersede(run, workflow.step_ids(), "rollback")
            restored.apply_to(workflow)
            run.graph = DependencyGraph.from_edges((s.id, s.dependencies) for s in workflow.steps)
            if workflow.started_at is None:
                workflow.started_at = self._clock.now()

            self._emit(
                run,
                "workflow:rollback",
                checkpoint=checkpoint_name,
                steps={sid: status.value for sid, status in workflow.step_statuses().items()},
            )
            self._transition(run, WorkflowStatus.RUNNING, action="rollback", checkpoint=checkpoint_name)
            logger.info("workflow.rollback", workflow=workflow_id, checkpoint=checkpoint_name)
            self._check_completion(run)
        self._pump(run)

    # =========================================================================
    # Incremental re-execution
    # =========================================================================

    def update_dependencies(self, workflow_id: str, step_id: str, dependencies: Iterable[str]) -> None:
        """Replace a step's dependencies, keeping the graph acyclic.

        The change is rejected (and the graph left as it was) if it names an
        unknown step or closes a cycle.

        Raises:
            WorkflowNotFoundError: Unknown workflow
            StepNotFoundError: Unknown step
            UnknownDependencyError: New dependency names an unknown step
            CyclicDependencyError: New dependencies close a cycle
        """
        run = self._require(workflow_id)
        with run.lock:
            step = run.workflow.get_step(step_id)
            if step is None:
                raise StepNotFoundError(step_id, workflow_id)

            previous = run.graph.set_dependencies(step_id, dependencies)
            try:
                run.graph.validate(workflow_id)
            except WorkflowError:
                run.graph.set_dependencies(step_id, previous)
                raise
            step.dependencies = run.graph.dependencies_of(step_id)
            logger.info(
                "step.dependencies_updated",
                workflow=workflow_id,
                step=step_id,
                dependencies=list(step.dependencies),
            )
        self._pump(run)

    def reset_steps(self, workflow_id: str, step_ids: Iterable[str]) -> set[str]:
        """Re-run the given steps and everything downstream of them.

        Every step in the affected set returns to a never-run ``pending``
        state (in-flight attempts are cancelled and discarded) and the
        workflow goes back to ``running``. Steps outside the set keep their
        status and results, so a ``failed`` step left outside it fails the
        workflow again.

        Returns:
            The affected step ids

        Raises:
            WorkflowNotFoundError: Unknown workflow
            StepNotFoundError: A given step isn't in the workflow
            InvalidStateError: Workflow hasn't been started yet
        """
        self._check_open()
        run = self._require(workflow_id)
        with run.lock:
            workflow = run.workflow
            if workflow.status == WorkflowStatus.CREATED:
                raise InvalidStateError(workflow_id, workflow.status.value, "reset steps of")
            requested = list(step_ids)
            for step_id in requested:
                if step_id not in run.graph:
                    raise StepNotFoundError(step_id, workflow_id)

            affected = run.graph.affected_by(requested)
            self._supersede(run, affected, "reset")
            for step in workflow.steps:
                if step.id in affected:
                    previous = step.status
                    step.reset()
                    self._record(run, previous.value, step.status.value, step=step.id, action="reset")
            workflow.completed_at = None

            ordered = [sid for sid in workflow.step_ids() if sid in affected]
            self._emit(run, "steps:reset", steps=ordered, requested=requested)
            self._transition(run, WorkflowStatus.RUNNING, action="reset")
            logger.info("steps.reset", workflow=workflow_id, requested=requested, affected=ordered)
            self._check_completion(run)
        self._pump(run)
        return affected

    # =========================================================================
    # Queries
    # =========================================================================

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Consistent copy of a workflow, or None if unknown."""
        run = self._lookup(workflow_id)
        if run is None:
            return None
        with run.lock:
            return run.workflow.snapshot()

    def get_all_workflows(self) -> list[Workflow]:
        """Copies of every registered workflow, in registration order."""
        return [self._snapshot(run) for run in self._all_runs()]

    def get_workflows_by_status(self, status: WorkflowStatus | str) -> list[Workflow]:
        """Copies of every workflow currently in ``status``."""
        status = WorkflowStatus(status)
        return [w for w in self.get_all_workflows() if w.status == status]

    def wait_for(self, workflow_id: str, timeout: float | None = None) -> Workflow:
        """Block until the workflow completes, fails or is removed.

        Returns a copy of the workflow as it stands when the wait ends; if
        ``timeout`` expired first the copy is not terminal.

        Raises:
            WorkflowNotFoundError: Unknown workflow
        """
        run = self._require(workflow_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        with run.lock:
            while not (run.workflow.is_terminal or run.removed):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                run.changed.wait(remaining)
            return run.workflow.snapshot()

    def get_stats(self) -> dict[str, Any]:
        """Counts of workflows and steps by status."""
        by_status = {status.value: 0 for status in WorkflowStatus}
        steps_by_status = {status.value: 0 for status in StepStatus}
        total_steps = 0
        for workflow in self.get_all_workflows():
            by_status[workflow.status.value] += 1
            for step in workflow.steps:
                steps_by_status[step.status.value] += 1
                total_steps += 1
        return {
            "total_workflows": sum(by_status.values()),
            "active_workflows": by_status[WorkflowStatus.RUNNING.value] + by_status[WorkflowStatus.PAUSED.value],
            "workflows_by_status": by_status,
            "total_steps": total_steps,
            "steps_by_status": steps_by_status,
            "events_published": self._events_published,
            "subscriptions": self._events.subscription_count,
        }

    def health_check(self) -> dict[str, Any]:
        """Liveness summary for monitoring."""
        stats = self.get_stats()
        uptime = (self._clock.now() - self._started_at).total_seconds()
        return {
            "status": "unhealthy" if self._closed else "healthy",
            "closed": self._closed,
            "workflows": stats["total_workflows"],
            "active_workflows": stats["active_workflows"],
            "registered_step_types": self.registry.list_types(),
            "dispatcher": type(self._dispatcher).__name__,
            "uptime_seconds": uptime,
            "timestamp": self._clock.now().isoformat(),
        }

    # =========================================================================
    # Observers
    # =========================================================================

    def subscribe(self, event_type: str, handler: EventHandler, workflow_id: str | None = None) -> str:
        """Subscribe to engine events (``*``, ``step:*`` or an exact type)."""
        return self._events.subscribe(event_type, handler, workflow_id=workflow_id)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._events.unsubscribe(subscription_id)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def close(self, wait: bool = True) -> None:
        """Cancel in-flight work and pending backoffs, then stop dispatching."""
        if self._closed:
            return
        self._closed = True
        for run in self._all_runs():
            with run.lock:
                self._supersede(run, run.workflow.step_ids(), "engine closed")
                run.changed.notify_all()
        if self._owns_dispatcher:
            self._dispatcher.shutdown(wait=wait)
        self._events.close()
        logger.info("engine.closed")

    def __enter__(self) -> WorkflowEngine:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # =========================================================================
    # Scheduling loop
    # =========================================================================

    def _pump(self, run: _WorkflowRun) -> None:
        """Claim and dispatch eligible steps until none are left.

        Only one pump runs per workflow. A call made while one is running
        returns at once: the running pump re-reads eligibility under the lock
        before it exits, so nothing is missed.
        """
        with run.lock:
            if run.pumping:
                return
            run.pumping = True
        try:
            while True:
                with run.lock:
                    jobs = self._claim_eligible(run)
                    if not jobs:
                        run.pumping = False
                        return
                for job in jobs:
                    self._dispatcher.submit(job)
        except BaseException:
            with run.lock:
                run.pumping = False
            raise

    def _claim_eligible(self, run: _WorkflowRun) -> list[Callable[[], None]]:
        """Move every eligible step to running and build its job. Call under the lock."""
        workflow = run.workflow
        if run.removed or self._closed or workflow.status != WorkflowStatus.RUNNING:
            return []

        jobs = []
        for step_id in run.graph.eligible_nodes(workflow.step_statuses()):
            step = workflow.get_step(step_id)
            self._set_step_status(run, step, StepStatus.RUNNING)
            step.started_at = self._clock.now()
            step.completed_at = None
            attempt = step.retry_count + 1

            token = CancellationToken()
            run.tokens[step_id] = token
            data = MappingProxyType(copy.deepcopy(workflow.data))
            self._emit(run, "step:started", step=step_id, type=step.type, attempt=attempt)
            jobs.append(partial(
                self._run_step,
                run,
                step_id,
                run.generations[step_id],
                run.executors[step_id],
                copy.deepcopy(step.config),
                data,
                token,
                attempt,
            ))
        return jobs

    def _run_step(
        self,
        run: _WorkflowRun,
        step_id: str,
        generation: int,
        executor: StepExecutor,
        config: dict[str, Any],
        data: Mapping[str, Any],
        token: CancellationToken,
        attempt: int,
    ) -> None:
        """One step attempt; runs on the dispatcher, never under the workflow lock."""
        with LogContext(workflow=run.workflow.id, step=step_id, attempt=attempt):
            if token.cancelled:
                self._interrupt(run, step_id, generation, token.reason)
            else:
                logger.debug("step.dispatch", executor=repr(executor))
                try:
                    result = executor.execute(config, data, token)
                    if result is not None and not isinstance(result, Mapping):
                        raise StepExecutionError(
                            f"Executor returned {type(result).__name__}, expected a mapping or None",
                            retryable=False,
                        )
                except Exception as e:
                    logger.warning(
                        "step.attempt_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        category=categorize_error(e).value,
                    )
                    self._on_failure(run, step_id, generation, token, e)
                else:
                    self._on_success(run, step_id, generation, result)
        self._pump(run)

    def _on_success(
        self,
        run: _WorkflowRun,
        step_id: str,
        generation: int,
        result: Mapping[str, Any] | None,
    ) -> None:
        with run.lock:
            if self._is_stale(run, step_id, generation):
                logger.debug("step.result_discarded", workflow=run.workflow.id, step=step_id)
                return
            run.tokens.pop(step_id, None)
            workflow = run.workflow
            step = workflow.get_step(step_id)

            output = copy.deepcopy(dict(result)) if result is not None else None
            if output:
                workflow.data.update(copy.deepcopy(output))
            step.result = output
            step.error = None
            step.completed_at = self._clock.now()
            self._set_step_status(run, step, StepStatus.COMPLETED)
            self._emit(
                run,
                "step:completed",
                step=step_id,
                attempt=step.retry_count + 1,
                result=copy.deepcopy(output),
                duration_seconds=step.duration_seconds,
            )
            logger.debug("step.complete", workflow=workflow.id, step=step_id, duration_seconds=step.duration_seconds)
            self._check_completion(run)

    def _on_failure(
        self,
        run: _WorkflowRun,
        step_id: str,
        generation: int,
        token: CancellationToken,
        error: Exception,
    ) -> None:
        with run.lock:
            if self._is_stale(run, step_id, generation):
                logger.debug("step.result_discarded", workflow=run.workflow.id, step=step_id)
                return
            workflow = run.workflow
            if token.cancelled and workflow.status == WorkflowStatus.FAILED:
                self._interrupt(run, step_id, generation, token.reason)
                return

            run.tokens.pop(step_id, None)
            step = workflow.get_step(step_id)
            step.error = str(error)
            attempt = step.retry_count + 1
            category = categorize_error(error).value
            max_attempts = step.max_attempts or self._settings.max_attempts

            retry_allowed = workflow.status != WorkflowStatus.FAILED and self._retry.should_retry(
                attempt, max_attempts, error
            )
            if retry_allowed:
                step.retry_count += 1
                delay = self._retry.backoff_duration(step.retry_count)
                self._set_step_status(run, step, StepStatus.RETRYING, error=step.error)
                self._emit(
                    run,
                    "step:retry",
                    step=step_id,
                    attempt=step.retry_count,
                    delay_seconds=delay,
                    error=step.error,
                    category=category,
                )
                logger.warning(
                    "step.retry",
                    workflow=workflow.id,
                    step=step_id,
                    attempt=step.retry_count,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                )
                run.timers[step_id] = self._clock.call_later(
                    delay, partial(self._retry_due, run, step_id, run.generations[step_id])
                )
                return

            step.completed_at = self._clock.now()
            self._set_step_status(run, step, StepStatus.FAILED, error=step.error)
            self._emit(run, "step:failed", step=step_id, error=step.error, attempts=attempt, category=category)
            logger.error(
                "step.failed",
                workflow=workflow.id,
                step=step_id,
                attempts=attempt,
                error=step.error,
                category=category,
            )
            if workflow.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
                self._fail_workflow(run, step_id)

    def _retry_due(self, run: _WorkflowRun, step_id: str, generation: int) -> None:
        """Backoff elapsed: the step becomes pending again."""
        with run.lock:
            run.timers.pop(step_id, None)
            step = run.workflow.get_step(step_id)
            if (
                run.removed
                or run.generations.get(step_id) != generation
                or step is None
                or step.status != StepStatus.RETRYING
            ):
                return
            self._set_step_status(run, step, StepStatus.PENDING, action="retry")
        self._pump(run)

    def _interrupt(self, run: _WorkflowRun, step_id: str, generation: int, reason: str | None) -> None:
        """Return a cancelled attempt to pending without charging the retry budget."""
        with run.lock:
            if self._is_stale(run, step_id, generation):
                return
            run.tokens.pop(step_id, None)
            step = run.workflow.get_step(step_id)
            step.started_at = None
            self._set_step_status(run, step, StepStatus.PENDING, action="interrupted", reason=reason)
            logger.info("step.interrupted", workflow=run.workflow.id, step=step_id, reason=reason)

    def _fail_workflow(self, run: _WorkflowRun, step_id: str) -> None:
        workflow = run.workflow
        for token in run.tokens.values():
            token.cancel("workflow failed")
        for other_id in list(run.timers):
            run.timers.pop(other_id).cancel()
            other = workflow.get_step(other_id)
            if other is not None and other.status == StepStatus.RETRYING:
                self._set_step_status(run, other, StepStatus.PENDING, action="workflow failed")

        workflow.completed_at = self._clock.now()
        self._transition(run, WorkflowStatus.FAILED, step=step_id, error=workflow.get_step(step_id).error)
        self._emit(run, "workflow:failed", step=step_id, error=workflow.get_step(step_id).error)
        logger.error(
            "workflow.failed",
            workflow=workflow.id,
            step=step_id,
            duration_seconds=workflow.duration_seconds,
        )

    def _check_completion(self, run: _WorkflowRun) -> None:
        """Move an active workflow to completed or failed once its steps decide it."""
        workflow = run.workflow
        if workflow.status not in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
            return
        # a failed step restored by rollback, or left outside a reset
        failed = workflow.steps_with_status(StepStatus.FAILED)
        if failed:
            self._fail_workflow(run, failed[0])
            return
        if not workflow.all_steps_completed:
            return
        workflow.completed_at = self._clock.now()
        self._transition(run, WorkflowStatus.COMPLETED)
        self._emit(run, "workflow:completed", data=copy.deepcopy(workflow.data))
        logger.info(
            "workflow.complete",
            workflow=workflow.id,
            step_count=len(workflow.steps),
            duration_seconds=workflow.duration_seconds,
        )

    def _is_stale(self, run: _WorkflowRun, step_id: str, generation: int) -> bool:
        """True if a rollback, reset or removal superseded this dispatch."""
        if run.removed or run.generations.get(step_id) != generation:
            return True
        step = run.workflow.get_step(step_id)
        return step is None or step.status != StepStatus.RUNNING

    def _supersede(self, run: _WorkflowRun, step_ids: Iterable[str], reason: str) -> None:
        """Invalidate in-flight dispatches and pending backoffs of ``step_ids``."""
        for step_id in step_ids:
            run.generations[step_id] = run.generations.get(step_id, 0) + 1
            token = run.tokens.pop(step_id, None)
            if token is not None:
                token.cancel(reason)
            timer = run.timers.pop(step_id, None)
            if timer is not None:
                timer.cancel()

    # =========================================================================
    # State mutation helpers (call under the workflow lock)
    # =========================================================================

    def _transition(self, run: _WorkflowRun, target: WorkflowStatus, **details: Any) -> None:
        workflow = run.workflow
        current = workflow.status
        validate_workflow_transition(current, target)
        workflow.status = target
        self._record(run, current.value, target.value, **details)
        self._emit(run, "state:changed", **{"from": current.value, "to": target.value}, **details)
        run.changed.notify_all()

    def _set_step_status(self, run: _WorkflowRun, step: Step, target: StepStatus, **details: Any) -> None:
        current = step.status
        validate_step_transition(current, target)
        step.status = target
        self._record(run, current.value, target.value, step=step.id, **details)

    def _record(self, run: _WorkflowRun, from_status: str | None, to_status: str, **details: Any) -> None:
        run.workflow.history.append(HistoryEntry(
            workflow_id=run.workflow.id,
            from_status=from_status,
            to_status=to_status,
            timestamp=self._clock.now(),
            details=details,
        ))

    def _emit(self, run: _WorkflowRun, event_type: str, **payload: Any) -> None:
        run.sequence += 1
        event = Event(
            event_type=event_type,
            workflow_id=run.workflow.id,
            payload=payload,
            sequence=run.sequence,
            timestamp=self._clock.now(),
        )
        with self._lock:
            self._events_published += 1
        self._events.publish(event)

    # =========================================================================
    # Registry helpers
    # =========================================================================

    def _lookup(self, workflow_id: str) -> _WorkflowRun | None:
        with self._lock:
            return self._runs.get(workflow_id)

    def _require(self, workflow_id: str) -> _WorkflowRun:
        run = self._lookup(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        return run

    def _all_runs(self) -> list[_WorkflowRun]:
        with self._lock:
            return list(self._runs.values())

    def _snapshot(self, run: _WorkflowRun) -> Workflow:
        with run.lock:
            return run.workflow.snapshot()

    def _check_open(self) -> None:
        if self._closed:
            raise OrchestrationError("Workflow engine is closed")

    def __repr__(self) -> str:
        return f"WorkflowEngine(workflows={len(self._runs)}, dispatcher={type(self._dispatcher).__name__})"


__all__ = ["StepInput", "WorkflowEngine"]
