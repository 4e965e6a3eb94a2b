"""Tests for flowspine.orchestration.checkpoints — CheckpointStore."""

from collections import deque

import pytest

from flowspine.orchestration.checkpoints import CheckpointStore
from flowspine.orchestration.exceptions import CheckpointNotFoundError, DuplicateCheckpointError
from flowspine.orchestration.models import Step, StepStatus, Workflow, WorkflowStatus


@pytest.fixture
def workflow() -> Workflow:
    return Workflow(
        id="wf",
        name="wf",
        steps=[
            Step(id="a", type="t", status=StepStatus.COMPLETED, result={"rows": [1, 2]}),
            Step(id="b", type="t", dependencies=("a",)),
        ],
        status=WorkflowStatus.RUNNING,
        data={"rows": [1, 2], "meta": {"source": "x"}},
        history=deque(maxlen=10),
    )


@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore()


class TestCapture:
    def test_appends_checkpoint(self, store, workflow):
        checkpoint = store.capture(workflow, "cp1")
        assert store.names(workflow) == ["cp1"]
        assert checkpoint.workflow_id == "wf"
        assert checkpoint.workflow_status == WorkflowStatus.RUNNING
        assert checkpoint.step_statuses() == {"a": StepStatus.COMPLETED, "b": StepStatus.PENDING}

    def test_duplicate_name(self, store, workflow):
        store.capture(workflow, "cp1")
        with pytest.raises(DuplicateCheckpointError):
            store.capture(workflow, "cp1")

    def test_later_mutation_does_not_leak_in(self, store, workflow):
        checkpoint = store.capture(workflow, "cp1")
        workflow.data["rows"].append(3)
        workflow.data["meta"]["source"] = "y"
        workflow.steps[0].result["rows"].append(3)
        workflow.steps[1].status = StepStatus.COMPLETED
        assert checkpoint.data == {"rows": [1, 2], "meta": {"source": "x"}}
        assert checkpoint.step("a").result == {"rows": [1, 2]}
        assert checkpoint.step("b").status == StepStatus.PENDING

    def test_reading_data_returns_copies(self, store, workflow):
        checkpoint = store.capture(workflow, "cp1")
        checkpoint.data["rows"].append(99)
        assert checkpoint.data["rows"] == [1, 2]

    def test_latest(self, store, workflow):
        assert store.latest(workflow) is None
        store.capture(workflow, "cp1")
        store.capture(workflow, "cp2")
        assert store.latest(workflow).name == "cp2"


class TestRestore:
    def test_restores_state(self, store, workflow):
        store.capture(workflow, "cp1")
        workflow.steps[1].status = StepStatus.FAILED
        workflow.steps[1].error = "boom"
        workflow.data["extra"] = True

        store.restore(workflow, "cp1").apply_to(workflow)

        assert workflow.steps[1].status == StepStatus.PENDING
        assert workflow.steps[1].error is None
        assert workflow.data == {"rows": [1, 2], "meta": {"source": "x"}}

    def test_restore_does_not_touch_workflow(self, store, workflow):
        store.capture(workflow, "cp1")
        workflow.data["extra"] = True
        store.restore(workflow, "cp1")
        assert workflow.data["extra"] is True

    def test_mutating_restored_state_does_not_alter_checkpoint(self, store, workflow):
        checkpoint = store.capture(workflow, "cp1")
        store.restore(workflow, "cp1").apply_to(workflow)
        workflow.data["rows"].append(3)
        workflow.steps[0].result["rows"].append(3)
        assert checkpoint.data["rows"] == [1, 2]
        assert checkpoint.step("a").result == {"rows": [1, 2]}

    def test_in_flight_steps_restore_as_pending(self, store, workflow):
        workflow.steps[1].status = StepStatus.RUNNING
        store.capture(workflow, "mid-run")
        workflow.steps[1].status = StepStatus.COMPLETED
        store.restore(workflow, "mid-run").apply_to(workflow)
        assert workflow.steps[1].status == StepStatus.PENDING
        assert workflow.steps[1].started_at is None

    def test_latest_when_unnamed(self, store, workflow):
        store.capture(workflow, "cp1")
        store.capture(workflow, "cp2")
        assert store.restore(workflow).checkpoint.name == "cp2"

    def test_checkpoint_list_kept(self, store, workflow):
        store.capture(workflow, "cp1")
        store.capture(workflow, "cp2")
        store.restore(workflow, "cp1").apply_to(workflow)
        assert store.names(workflow) == ["cp1", "cp2"]

    def test_unknown_name(self, store, workflow):
        with pytest.raises(CheckpointNotFoundError):
            store.restore(workflow, "nope")

    def test_no_checkpoints(self, store, workflow):
        with pytest.raises(CheckpointNotFoundError):
            store.restore(workflow)
