"""Tests for checkpoint creation and rollback through the engine."""

import pytest

from flowspine.orchestration.exceptions import (
    CheckpointNotFoundError,
    DuplicateCheckpointError,
    WorkflowNotFoundError,
)
from flowspine.orchestration.models import StepStatus, WorkflowStatus
from flowspine.orchestration.persistence import InMemoryEventStore
from flowspine.orchestration.testing import (
    FailingExecutor,
    StubExecutor,
    assert_step_status,
    assert_workflow_completed,
    assert_workflow_failed,
    make_engine,
)


@pytest.fixture
def executors():
    return {"a": StubExecutor({"a": 1}), "b": StubExecutor({"b": 2}), "c": StubExecutor({"c": 3})}


@pytest.fixture
def cp_engine(executors):
    engine = make_engine(executors)
    engine.create_workflow("wf", "wf", [
        {"id": "A", "type": "a"},
        {"id": "B", "type": "b", "dependencies": ["A"]},
        {"id": "C", "type": "c", "dependencies": ["B"]},
    ])
    yield engine
    engine.close()


def _checkpoint_after(engine, step_id, name):
    """Take a checkpoint the moment ``step_id`` completes."""

    def handler(event):
        if event.payload.get("step") == step_id:
            engine.create_checkpoint(event.workflow_id, name)

    engine.subscribe("step:completed", handler)


class TestCreateCheckpoint:
    def test_records_step_statuses(self, cp_engine):
        checkpoint = cp_engine.create_checkpoint("wf", "before")
        assert checkpoint.name == "before"
        assert set(checkpoint.step_statuses().values()) == {StepStatus.PENDING}
        assert cp_engine.get_workflow("wf").checkpoints == [checkpoint]

    def test_duplicate_name(self, cp_engine):
        cp_engine.create_checkpoint("wf", "cp")
        with pytest.raises(DuplicateCheckpointError):
            cp_engine.create_checkpoint("wf", "cp")

    def test_unknown_workflow(self, cp_engine):
        with pytest.raises(WorkflowNotFoundError):
            cp_engine.create_checkpoint("missing", "cp")

    def test_event(self, cp_engine):
        store = InMemoryEventStore()
        store.attach(cp_engine, "checkpoint:*")
        cp_engine.create_checkpoint("wf", "cp")
        [event] = store.events()
        assert event.payload == {"checkpoint": "cp", "steps": {"A": "pending", "B": "pending", "C": "pending"}}

    def test_taken_mid_run(self, cp_engine):
        _checkpoint_after(cp_engine, "A", "afterA")
        cp_engine.start_workflow("wf")
        checkpoint = cp_engine.get_workflow("wf").checkpoints[0]
        assert checkpoint.step_statuses() == {
            "A": StepStatus.COMPLETED,
            "B": StepStatus.PENDING,
            "C": StepStatus.PENDING,
        }
        assert checkpoint.data == {"a": 1}


class TestRollback:
    def test_rollback_reruns_downstream(self, cp_engine, executors):
        _checkpoint_after(cp_engine, "A", "afterA")
        cp_engine.start_workflow("wf")
        assert_workflow_completed(cp_engine.get_workflow("wf"))

        cp_engine.rollback_to_checkpoint("wf", "afterA")

        assert_workflow_completed(cp_engine.get_workflow("wf"))
        assert executors["a"].call_count == 1
        assert executors["b"].call_count == 2
        assert executors["c"].call_count == 2

    def test_restores_checkpointed_statuses(self, cp_engine):
        store = InMemoryEventStore()
        cp_engine.start_workflow("wf")
        cp_engine.create_checkpoint("wf", "done")
        cp_engine.reset_steps("wf", ["A"])
        store.attach(cp_engine, "workflow:rollback")
        cp_engine.rollback_to_checkpoint("wf", "done")
        [event] = store.events()
        assert event.payload["steps"] == {"A": "completed", "B": "completed", "C": "completed"}

    def test_event_order(self, cp_engine):
        _checkpoint_after(cp_engine, "A", "afterA")
        cp_engine.start_workflow("wf")
        store = InMemoryEventStore()
        store.attach(cp_engine)

        cp_engine.rollback_to_checkpoint("wf", "afterA")

        types = store.event_types()
        assert types[:3] == ["workflow:rollback", "state:changed", "step:started"]
        rollback = store.events(event_type="workflow:rollback")[0]
        assert rollback.payload["steps"] == {"A": "completed", "B": "pending", "C": "pending"}
        changed = store.events(event_type="state:changed")[0]
        assert (changed.payload["from"], changed.payload["to"]) == ("completed", "running")
        assert changed.payload["checkpoint"] == "afterA"

    def test_rollback_restores_data(self, cp_engine):
        _checkpoint_after(cp_engine, "A", "afterA")
        cp_engine.start_workflow("wf")
        history_before = len(cp_engine.get_workflow("wf").checkpoints)

        cp_engine.rollback_to_checkpoint("wf", "afterA")

        workflow = cp_engine.get_workflow("wf")
        assert workflow.data == {"a": 1, "b": 2, "c": 3}
        assert len(workflow.checkpoints) == history_before

    def test_rollback_recovers_failed_workflow(self):
        flaky = FailingExecutor(error="disk full", fail_times=1, retryable=False)
        engine = make_engine({"task": StubExecutor(), "flaky": flaky})
        engine.create_workflow("wf", "wf", [
            {"id": "A", "type": "task"},
            {"id": "B", "type": "flaky", "dependencies": ["A"]},
        ])
        _checkpoint_after(engine, "A", "afterA")
        engine.start_workflow("wf")
        assert_workflow_failed(engine.get_workflow("wf"), step="B")

        engine.rollback_to_checkpoint("wf", "afterA")

        assert_workflow_completed(engine.get_workflow("wf"))
        assert flaky.call_count == 2

    def test_latest_when_name_omitted(self, cp_engine):
        _checkpoint_after(cp_engine, "A", "afterA")
        _checkpoint_after(cp_engine, "B", "afterB")
        cp_engine.start_workflow("wf")
        store = InMemoryEventStore()
        store.attach(cp_engine, "step:started")

        cp_engine.rollback_to_checkpoint("wf")

        assert [e.payload["step"] for e in store.events()] == ["C"]

    def test_rollback_of_created_workflow_starts_it(self, cp_engine):
        cp_engine.create_checkpoint("wf", "initial")
        cp_engine.rollback_to_checkpoint("wf", "initial")
        workflow = cp_engine.get_workflow("wf")
        assert_workflow_completed(workflow)
        assert workflow.started_at is not None

    def test_rollback_of_paused_workflow_resumes_it(self):
        holder = {"calls": 0}

        def pause_once(config, data, cancel):
            holder["calls"] += 1
            if holder["calls"] == 1:
                holder["engine"].pause_workflow("wf")
            return None

        engine = make_engine({"task": StubExecutor(), "pausing": pause_once})
        holder["engine"] = engine
        engine.create_workflow("wf", "wf", [
            {"id": "A", "type": "pausing"},
            {"id": "B", "type": "task", "dependencies": ["A"]},
        ])
        engine.create_checkpoint("wf", "start")
        engine.start_workflow("wf")
        assert engine.get_workflow("wf").status == WorkflowStatus.PAUSED
        assert_step_status(engine.get_workflow("wf"), "B", StepStatus.PENDING)

        store = InMemoryEventStore()
        store.attach(engine, "state:changed")
        engine.rollback_to_checkpoint("wf", "start")

        first = store.events()[0]
        assert (first.payload["from"], first.payload["to"]) == ("paused", "running")
        assert_workflow_completed(engine.get_workflow("wf"))
        assert holder["calls"] == 2

    def test_unknown_checkpoint(self, cp_engine):
        with pytest.raises(CheckpointNotFoundError):
            cp_engine.rollback_to_checkpoint("wf", "nope")

    def test_no_checkpoints(self, cp_engine):
        with pytest.raises(CheckpointNotFoundError):
            cp_engine.rollback_to_checkpoint("wf")

    def test_mutating_snapshot_does_not_alter_checkpoint(self, cp_engine):
        cp_engine.start_workflow("wf")
        cp_engine.create_checkpoint("wf", "done")
        cp_engine.get_workflow("wf").checkpoints[0].step("A").result["a"] = 99
        cp_engine.rollback_to_checkpoint("wf", "done")
        assert cp_engine.get_workflow("wf").get_step("A").result == {"a": 1}

    def test_checkpoint_holding_failed_step_fails_again(self):
        broken = FailingExecutor(error="bad input", retryable=False)
        engine = make_engine({"task": StubExecutor(), "broken": broken})
        engine.create_workflow("wf", "wf", [
            {"id": "A", "type": "task"},
            {"id": "B", "type": "broken", "dependencies": ["A"]},
            {"id": "C", "type": "task", "dependencies": ["B"]},
        ])
        engine.start_workflow("wf")
        assert_workflow_failed(engine.get_workflow("wf"), step="B")
        engine.create_checkpoint("wf", "post-mortem")
        store = InMemoryEventStore()
        store.attach(engine)

        engine.rollback_to_checkpoint("wf", "post-mortem")

        workflow = engine.wait_for("wf", timeout=1)
        assert_workflow_failed(workflow, step="B", error_contains="bad input")
        assert_step_status(workflow, "C", StepStatus.PENDING)
        assert workflow.completed_at is not None
        assert broken.call_count == 1
        assert store.event_types() == ["workflow:rollback", "state:changed", "state:changed", "workflow:failed"]
        transitions = [(e.payload["from"], e.payload["to"]) for e in store.events(event_type="state:changed")]
        assert transitions == [("failed", "running"), ("running", "failed")]
        assert store.events(event_type="workflow:failed")[0].payload == {"step": "B", "error": "bad input"}
