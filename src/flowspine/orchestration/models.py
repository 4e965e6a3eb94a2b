"""Workflow domain models.

Defines the data structures the engine mutates and hands out:
- StepDefinition: what a caller declares (id, type, dependencies, config)
- Step: a declared step plus its runtime state
- Workflow: ordered steps, status, shared data, history, checkpoints
- HistoryEntry: one recorded workflow or step status transition

Status transitions are table-driven (``WORKFLOW_TRANSITIONS``,
``STEP_TRANSITIONS``); the engine validates every ordinary transition
against them. Rollback and step reset rewrite state wholesale and are the
only paths that bypass the step table.
"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from flowspine.core.errors import ValidationError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class InvalidTransitionError(ValueError):
    """Raised when an illegal state transition is attempted.

    Transition validation is strict: if a legitimate transition is blocked,
    add it to the table explicitly, never remove the guard.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class StepStatus(str, Enum):
    """Status of one step.

    ``RETRYING`` marks a failed attempt waiting out its backoff: not
    eligible, not terminal. The timer moves it back to ``PENDING``.

    Valid transition graph::

        PENDING  → RUNNING
        RUNNING  → COMPLETED | FAILED | RETRYING | PENDING (interrupted)
        RETRYING → PENDING
        COMPLETED → (terminal)
        FAILED    → (terminal)
    """

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING}),
    StepStatus.RUNNING: frozenset({
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.RETRYING,
        StepStatus.PENDING,
    }),
    StepStatus.RETRYING: frozenset({StepStatus.PENDING}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}


class WorkflowStatus(str, Enum):
    """Status of a workflow.

    Valid transition graph::

        CREATED   → RUNNING
        RUNNING   → COMPLETED | FAILED | PAUSED | RUNNING (rollback/reset)
        PAUSED    → RUNNING | COMPLETED | FAILED (in-flight steps settling)
        COMPLETED → RUNNING (rollback/reset only)
        FAILED    → RUNNING (rollback/reset only)
    """

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.CREATED: frozenset({WorkflowStatus.RUNNING}),
    WorkflowStatus.RUNNING: frozenset({
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.PAUSED,
        WorkflowStatus.RUNNING,
    }),
    WorkflowStatus.PAUSED: frozenset({
        WorkflowStatus.RUNNING,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    }),
    WorkflowStatus.COMPLETED: frozenset({WorkflowStatus.RUNNING}),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.RUNNING}),
}

TERMINAL_WORKFLOW_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


def validate_step_transition(current: StepStatus, target: StepStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal for a step."""
    if target not in STEP_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "StepStatus")


def validate_workflow_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal for a workflow."""
    if target not in WORKFLOW_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "WorkflowStatus")


@dataclass(frozen=True)
class StepDefinition:
    """
    A step as declared by the caller.

    Attributes:
        id: Unique within the workflow
        type: Executor tag, resolved against the executor registry
        dependencies: Ids of steps that must complete first
        name: Human-readable label (defaults to the id)
        config: Passed verbatim to the executor
        max_attempts: Per-step attempt budget (None = engine default)
    """

    id: str
    type: str
    dependencies: tuple[str, ...] = ()
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("Step id must be a non-empty string")
        if not self.type:
            raise ValidationError(f"Step '{self.id}' has no type")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValidationError(f"Step '{self.id}' max_attempts must be >= 1")
        # Normalise lists passed by callers
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0) -> StepDefinition:
        """Build from a plain dict; a missing id becomes ``step_<index>``."""
        return cls(
            id=data.get("id") or f"step_{index}",
            type=data.get("type", ""),
            dependencies=tuple(data.get("dependencies", data.get("depends_on", ()))),
            name=data.get("name", ""),
            config=dict(data.get("config") or {}),
            max_attempts=data.get("max_attempts"),
        )


@dataclass
class Step:
    """A step and its runtime state within one workflow."""

    id: str
    type: str
    name: str = ""
    dependencies: tuple[str, ...] = ()
    config: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None
    status: StepStatus = StepStatus.PENDING
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None

    @classmethod
    def from_definition(cls, definition: StepDefinition) -> Step:
        return cls(
            id=definition.id,
            type=definition.type,
            name=definition.name or definition.id,
            dependencies=definition.dependencies,
            config=copy.deepcopy(definition.config),
            max_attempts=definition.max_attempts,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def reset(self) -> None:
        """Back to a never-run pending step."""
        self.status = StepStatus.PENDING
        self.retry_count = 0
        self.started_at = None
        self.completed_at = None
        self.error = None
        self.result = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "dependencies": list(self.dependencies),
            "config": self.config,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "result": self.result,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """One recorded status transition.

    Workflow transitions carry workflow statuses; step transitions carry
    step statuses and name the step in ``details["step"]``.
    """

    workflow_id: str
    from_status: str | None
    to_status: str
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "from": self.from_status,
            "to": self.to_status,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass
class Workflow:
    """
    A workflow: ordered steps with dependencies, and everything the engine
    has recorded about running them.

    Attributes:
        id: Unique within the engine's registry
        name: Human-readable name
        steps: Steps in declaration order (ties in scheduling follow this order)
        status: Current workflow status
        data: Shared data, accumulated from step results
        history: Status transitions, oldest dropped beyond ``max_history``
        checkpoints: Named snapshots, oldest first
        metadata: Free-form caller metadata
    """

    id: str
    name: str
    steps: list[Step]
    status: WorkflowStatus = WorkflowStatus.CREATED
    data: dict[str, Any] = field(default_factory=dict)
    history: deque[HistoryEntry] = field(default_factory=deque)
    checkpoints: list[Any] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # =========================================================================
    # Accessors
    # =========================================================================

    def get_step(self, step_id: str) -> Step | None:
        """Get step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_ids(self) -> list[str]:
        """Step ids in declaration order."""
        return [s.id for s in self.steps]

    def step_statuses(self) -> dict[str, StepStatus]:
        return {s.id: s.status for s in self.steps}

    def steps_with_status(self, status: StepStatus) -> list[str]:
        return [s.id for s in self.steps if s.status == status]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def all_steps_completed(self) -> bool:
        return all(s.status == StepStatus.COMPLETED for s in self.steps)

    @property
    def progress(self) -> int:
        """Percentage of steps completed, rounded."""
        if not self.steps:
            return 100 if self.status == WorkflowStatus.COMPLETED else 0
        done = len(self.steps_with_status(StepStatus.COMPLETED))
        return round(done / len(self.steps) * 100)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    # =========================================================================
    # Copying / serialization
    # =========================================================================

    def snapshot(self) -> Workflow:
        """Independent copy for handing to callers.

        Steps, data, history and metadata are deep-copied; checkpoints are
        immutable and shared.
        """
        return Workflow(
            id=self.id,
            name=self.name,
            steps=copy.deepcopy(self.steps),
            status=self.status,
            data=copy.deepcopy(self.data),
            history=deque(self.history, maxlen=self.history.maxlen),
            checkpoints=list(self.checkpoints),
            metadata=copy.deepcopy(self.metadata),
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "data": self.data,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "steps": [s.to_dict() for s in self.steps],
            "history": [h.to_dict() for h in self.history],
            "checkpoints": [c.name for c in self.checkpoints],
        }

    def __repr__(self) -> str:
        return f"Workflow({self.id!r}, status={self.status.value}, steps={len(self.steps)})"


__all__ = [
    "HistoryEntry",
    "InvalidTransitionError",
    "STEP_TRANSITIONS",
    "Step",
    "StepDefinition",
    "StepStatus",
    "TERMINAL_WORKFLOW_STATUSES",
    "WORKFLOW_TRANSITIONS",
    "Workflow",
    "WorkflowStatus",
    "utcnow",
    "validate_step_transition",
    "validate_workflow_transition",
]
