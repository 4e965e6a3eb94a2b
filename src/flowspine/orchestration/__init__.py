"""Orchestration layer: workflows, dependency graph, checkpoints and the engine.

Modules:
- ``models``        — Step, Workflow, statuses and their transition tables
- ``graph``         — DependencyGraph (cycles, eligibility, change impact)
- ``checkpoints``   — value snapshots and rollback state
- ``engine``        — WorkflowEngine (registry, state machine, scheduling loop)
- ``persistence``   — event-stream sinks and workflow snapshots
- ``workflow_yaml`` — declarative workflow documents
- ``testing``       — manual clock, executor doubles, assertions (import explicitly)
"""

from flowspine.orchestration.checkpoints import (
    Checkpoint,
    CheckpointStore,
    RestoredState,
    StepSnapshot,
)
from flowspine.orchestration.engine import WorkflowEngine
from flowspine.orchestration.exceptions import (
    CheckpointNotFoundError,
    CyclicDependencyError,
    DuplicateCheckpointError,
    DuplicateStepError,
    DuplicateWorkflowError,
    InvalidStateError,
    StepNotFoundError,
    UnknownDependencyError,
    UnknownStepTypeError,
    WorkflowNotFoundError,
)
from flowspine.orchestration.graph import DependencyGraph
from flowspine.orchestration.models import (
    HistoryEntry,
    InvalidTransitionError,
    Step,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowStatus,
)
from flowspine.orchestration.persistence import (
    InMemoryEventStore,
    JsonLinesEventStore,
    load_snapshot,
    save_snapshot,
    snapshot_workflow,
)
from flowspine.orchestration.workflow_yaml import StepSpec, WorkflowSpec

__all__ = [
    # checkpoints
    "Checkpoint",
    "CheckpointStore",
    "RestoredState",
    "StepSnapshot",
    # engine
    "WorkflowEngine",
    # exceptions
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
    # graph
    "DependencyGraph",
    # models
    "HistoryEntry",
    "InvalidTransitionError",
    "Step",
    "StepDefinition",
    "StepStatus",
    "Workflow",
    "WorkflowStatus",
    # persistence
    "InMemoryEventStore",
    "JsonLinesEventStore",
    "load_snapshot",
    "save_snapshot",
    "snapshot_workflow",
    # declarative
    "StepSpec",
    "WorkflowSpec",
]
