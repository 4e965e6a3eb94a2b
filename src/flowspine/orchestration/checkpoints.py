"""Checkpoints — named value snapshots of workflow state.

A checkpoint records every step's runtime state and a deep copy of the
workflow data at one instant. It shares no mutable reference with the live
workflow in either direction: capturing copies in, reading copies out, so
nothing done to the workflow after capture (or to a restored state after
rollback) can alter the checkpoint.

ARCHITECTURE
────────────
::

    CheckpointStore (stateless; checkpoints live on Workflow.checkpoints)
      ├── .capture(workflow, name)  → Checkpoint       (DuplicateCheckpointError)
      ├── .restore(workflow, name)  → RestoredState    (CheckpointNotFoundError)
      ├── .latest(workflow)         → Checkpoint | None
      └── .names(workflow)          → list[str]

    Checkpoint     ── frozen: name, created_at, StepSnapshot tuple, data copy
    RestoredState  ── what the engine writes back under the workflow lock

Steps that were in flight when the checkpoint was taken (running or waiting
out a backoff) restore as pending: the dispatch they belonged to is
superseded by the rollback, so they must be scheduled again.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowspine.orchestration.exceptions import (
    CheckpointNotFoundError,
    DuplicateCheckpointError,
)
from flowspine.orchestration.models import Step, StepStatus, Workflow, WorkflowStatus, utcnow


@dataclass(frozen=True)
class StepSnapshot:
    """Immutable copy of one step's runtime state."""

    id: str
    status: StepStatus
    dependencies: tuple[str, ...]
    retry_count: int
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None
    _result: dict[str, Any] | None = field(default=None, repr=False)

    @property
    def result(self) -> dict[str, Any] | None:
        """Fresh deep copy of the captured step result."""
        return copy.deepcopy(self._result)

    @classmethod
    def of(cls, step: Step) -> StepSnapshot:
        return cls(
            id=step.id,
            status=step.status,
            dependencies=tuple(step.dependencies),
            retry_count=step.retry_count,
            started_at=step.started_at,
            completed_at=step.completed_at,
            error=step.error,
            _result=copy.deepcopy(step.result),
        )

    def apply_to(self, step: Step) -> None:
        """Overwrite ``step``'s runtime state with this snapshot."""
        in_flight = self.status in (StepStatus.RUNNING, StepStatus.RETRYING)
        step.status = StepStatus.PENDING if in_flight else self.status
        step.dependencies = self.dependencies
        step.retry_count = self.retry_count
        step.started_at = None if in_flight else self.started_at
        step.completed_at = self.completed_at
        step.error = self.error
        step.result = self.result


@dataclass(frozen=True)
class Checkpoint:
    """A named, immutable snapshot of a workflow."""

    name: str
    workflow_id: str
    created_at: datetime
    workflow_status: WorkflowStatus
    steps: tuple[StepSnapshot, ...]
    _data: dict[str, Any] = field(repr=False)

    @property
    def data(self) -> dict[str, Any]:
        """Fresh deep copy of the captured workflow data."""
        return copy.deepcopy(self._data)

    def step(self, step_id: str) -> StepSnapshot | None:
        for snapshot in self.steps:
            if snapshot.id == step_id:
                return snapshot
        return None

    def step_statuses(self) -> dict[str, StepStatus]:
        return {s.id: s.status for s in self.steps}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "workflow_id": self.workflow_id,
            "created_at": self.created_at.isoformat(),
            "workflow_status": self.workflow_status.value,
            "steps": {s.id: s.status.value for s in self.steps},
        }


@dataclass
class RestoredState:
    """State the engine writes back when rolling a workflow back."""

    checkpoint: Checkpoint
    steps: dict[str, StepSnapshot]
    data: dict[str, Any]

    def apply_to(self, workflow: Workflow) -> None:
        """Replace the workflow's step states and data. Call under the workflow lock."""
        for step in workflow.steps:
            snapshot = self.steps.get(step.id)
            if snapshot is not None:
                snapshot.apply_to(step)
        workflow.data = self.data
        workflow.completed_at = None


class CheckpointStore:
    """Capture and restore checkpoints on ``Workflow.checkpoints``."""

    def capture(self, workflow: Workflow, name: str, now: datetime | None = None) -> Checkpoint:
        """Snapshot the workflow and append the checkpoint to it.

        Raises:
            DuplicateCheckpointError: If the workflow already has ``name``
        """
        if name in self.names(workflow):
            raise DuplicateCheckpointError(name, workflow.id)
        checkpoint = Checkpoint(
            name=name,
            workflow_id=workflow.id,
            created_at=now or utcnow(),
            workflow_status=workflow.status,
            steps=tuple(StepSnapshot.of(step) for step in workflow.steps),
            _data=copy.deepcopy(workflow.data),
        )
        workflow.checkpoints.append(checkpoint)
        return checkpoint

    def restore(self, workflow: Workflow, name: str | None = None) -> RestoredState:
        """Build the state to roll back to; ``name=None`` means the latest checkpoint.

        Does not modify the workflow. The checkpoint list is left intact.

        Raises:
            CheckpointNotFoundError: No such checkpoint (or none at all)
        """
        checkpoint = self.get(workflow, name) if name is not None else self.latest(workflow)
        if checkpoint is None:
            raise CheckpointNotFoundError(name, workflow.id)
        return RestoredState(
            checkpoint=checkpoint,
            steps={s.id: s for s in checkpoint.steps},
            data=checkpoint.data,
        )

    def get(self, workflow: Workflow, name: str) -> Checkpoint | None:
        for checkpoint in workflow.checkpoints:
            if checkpoint.name == name:
                return checkpoint
        return None

    def latest(self, workflow: Workflow) -> Checkpoint | None:
        return workflow.checkpoints[-1] if workflow.checkpoints else None

    def names(self, workflow: Workflow) -> list[str]:
        return [c.name for c in workflow.checkpoints]


__all__ = ["Checkpoint", "CheckpointStore", "RestoredState", "StepSnapshot"]
