"""
flowspine - dependency-aware workflow orchestration.

Subpackages:
- flowspine.core: errors, events, logging, settings
- flowspine.execution: retry policy, dispatch, clock, executor registry
- flowspine.orchestration: workflows, dependency graph, checkpoints, engine
"""

__version__ = "0.1.0"

from flowspine.core import *  # noqa
from flowspine.execution import (
    CancellationToken,
    ExecutorRegistry,
    InlineDispatcher,
    RetryPolicy,
    StepExecutor,
    SystemClock,
    ThreadPoolDispatcher,
)
from flowspine.orchestration import (
    Checkpoint,
    DependencyGraph,
    Step,
    StepDefinition,
    StepStatus,
    Workflow,
    WorkflowEngine,
    WorkflowSpec,
    WorkflowStatus,
)
