"""Orchestration exceptions — structured error hierarchy.

All orchestration exceptions inherit from ``flowspine.core.errors.WorkflowError``
so callers can catch the entire family with a single ``except`` clause.

Hierarchy::

    WorkflowError  (from flowspine.core.errors)
      ├── structural — rejected synchronously, never reach the scheduling loop
      │     ├── DuplicateWorkflowError    ── workflow id already registered
      │     ├── DuplicateStepError        ── step id repeated within a workflow
      │     ├── CyclicDependencyError     ── dependency graph has a cycle
      │     ├── UnknownDependencyError    ── step depends on a missing step
      │     └── UnknownStepTypeError      ── no executor for a step type
      └── contract — caller addressed something that isn't there / can't happen
            ├── WorkflowNotFoundError
            ├── StepNotFoundError
            ├── CheckpointNotFoundError
            ├── DuplicateCheckpointError
            └── InvalidStateError         ── operation not allowed in current status
"""

from __future__ import annotations

from flowspine.core.errors import ErrorContext, UnknownStepTypeError, WorkflowError


class DuplicateWorkflowError(WorkflowError):
    """Raised when a workflow id is already in the registry."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow {workflow_id} already exists",
            context=ErrorContext(workflow=workflow_id),
        )


class DuplicateStepError(WorkflowError):
    """Raised when two steps of one workflow share an id."""

    def __init__(self, step_id: str, workflow_id: str | None = None):
        self.step_id = step_id
        super().__init__(
            f"Duplicate step id: {step_id}",
            context=ErrorContext(workflow=workflow_id, step=step_id),
        )


class CyclicDependencyError(WorkflowError):
    """Raised when the dependency graph contains a cycle.

    ``cycle`` lists every step lying on a cycle, not just the first back
    edge found, so the error names everything the caller must fix.
    """

    def __init__(self, cycle: list[str], workflow_id: str | None = None):
        self.cycle = cycle
        cycle_str = ", ".join(cycle)
        super().__init__(
            f"Dependency cycle detected among steps: {cycle_str}",
            context=ErrorContext(workflow=workflow_id, metadata={"cycle": list(cycle)}),
        )


class UnknownDependencyError(WorkflowError):
    """Raised when a step depends on a step that doesn't exist."""

    def __init__(self, step_id: str, missing_deps: list[str], workflow_id: str | None = None):
        self.step_id = step_id
        self.missing_deps = missing_deps
        deps_str = ", ".join(missing_deps)
        super().__init__(
            f"Step '{step_id}' depends on unknown steps: {deps_str}",
            context=ErrorContext(workflow=workflow_id, step=step_id),
        )


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow id is not in the registry."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow {workflow_id} not found",
            context=ErrorContext(workflow=workflow_id),
        )


class StepNotFoundError(WorkflowError):
    """Raised when a step id is not part of the workflow."""

    def __init__(self, step_id: str, workflow_id: str):
        self.step_id = step_id
        self.workflow_id = workflow_id
        super().__init__(
            f"Step {step_id} not found in workflow {workflow_id}",
            context=ErrorContext(workflow=workflow_id, step=step_id),
        )


class CheckpointNotFoundError(WorkflowError):
    """Raised when rolling back to a checkpoint the workflow doesn't have."""

    def __init__(self, name: str | None, workflow_id: str):
        self.name = name
        self.workflow_id = workflow_id
        message = (
            f"Checkpoint {name} not found in workflow {workflow_id}"
            if name is not None
            else f"No checkpoints available for workflow {workflow_id}"
        )
        super().__init__(message, context=ErrorContext(workflow=workflow_id, checkpoint=name))


class DuplicateCheckpointError(WorkflowError):
    """Raised when a checkpoint name is reused within one workflow."""

    def __init__(self, name: str, workflow_id: str):
        self.name = name
        self.workflow_id = workflow_id
        super().__init__(
            f"Checkpoint {name} already exists in workflow {workflow_id}",
            context=ErrorContext(workflow=workflow_id, checkpoint=name),
        )


class InvalidStateError(WorkflowError):
    """Raised when an operation isn't allowed in the workflow's current status."""

    def __init__(self, workflow_id: str, current: str, action: str):
        self.workflow_id = workflow_id
        self.current = current
        self.action = action
        super().__init__(
            f"Cannot {action} workflow {workflow_id} in status: {current}",
            context=ErrorContext(workflow=workflow_id, metadata={"status": current}),
        )


__all__ = [
    "CheckpointNotFoundError",
    "CyclicDependencyError",
    "DuplicateCheckpointError",
    "DuplicateStepError",
    "DuplicateWorkflowError",
    "InvalidStateError",
    "StepNotFoundError",
    "UnknownDependencyError",
    "UnknownStepTypeError",
    "WorkflowNotFoundError",
]
