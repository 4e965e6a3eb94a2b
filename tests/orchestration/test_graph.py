"""Tests for flowspine.orchestration.graph — DependencyGraph."""

import pytest

from flowspine.orchestration.exceptions import (
    CyclicDependencyError,
    DuplicateStepError,
    UnknownDependencyError,
)
from flowspine.orchestration.graph import DependencyGraph
from flowspine.orchestration.models import StepStatus


def _graph(*edges):
    return DependencyGraph.from_edges(edges)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


class TestStructure:
    def test_add_and_query(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", ["a", "b"]))
        assert len(graph) == 3
        assert "b" in graph
        assert graph.dependencies_of("c") == ("a", "b")
        assert graph.dependents_of("a") == ["b", "c"]
        assert graph.nodes() == ["a", "b", "c"]

    def test_duplicate_node_rejected(self):
        graph = _graph(("a", []))
        with pytest.raises(DuplicateStepError):
            graph.add_node("a")

    def test_duplicate_dependencies_collapsed(self):
        assert _graph(("a", []), ("b", ["a", "a"])).dependencies_of("b") == ("a",)

    def test_set_dependencies_returns_previous(self):
        graph = _graph(("a", []), ("b", ["a"]))
        assert graph.set_dependencies("b", []) == ("a",)
        assert graph.dependencies_of("b") == ()

    def test_remove_node(self):
        graph = _graph(("a", []), ("b", ["a"]))
        graph.remove_node("a")
        assert "a" not in graph
        assert graph.missing_dependencies() == {"b": ["a"]}

    def test_remove_unknown(self):
        with pytest.raises(KeyError):
            DependencyGraph().remove_node("x")


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


class TestCycles:
    def test_acyclic(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", ["b"]))
        assert graph.has_cycle() is False
        assert graph.find_cycle_nodes() == []

    def test_self_dependency(self):
        graph = _graph(("a", ["a"]), ("b", []))
        assert graph.has_cycle() is True
        assert graph.find_cycle_nodes() == ["a"]

    def test_two_node_cycle(self):
        graph = _graph(("a", ["b"]), ("b", ["a"]))
        assert graph.has_cycle() is True
        assert graph.find_cycle_nodes() == ["a", "b"]

    def test_reports_every_node_on_the_cycle(self):
        graph = _graph(("a", ["d"]), ("b", ["a"]), ("c", ["b"]), ("d", ["c"]))
        assert graph.find_cycle_nodes() == ["a", "b", "c", "d"]

    def test_downstream_of_cycle_not_reported(self):
        graph = _graph(("a", ["b"]), ("b", ["a"]), ("c", ["b"]), ("root", []))
        assert graph.find_cycle_nodes() == ["a", "b"]

    def test_two_disjoint_cycles(self):
        graph = _graph(("a", ["b"]), ("b", ["a"]), ("x", []), ("y", ["z"]), ("z", ["y"]))
        assert graph.find_cycle_nodes() == ["a", "b", "y", "z"]

    def test_diamond_is_not_a_cycle(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", ["a"]), ("d", ["b", "c"]))
        assert graph.has_cycle() is False

    def test_long_chain_does_not_recurse(self):
        edges = [("n0", [])] + [(f"n{i}", [f"n{i - 1}"]) for i in range(1, 5000)]
        graph = _graph(*edges)
        assert graph.has_cycle() is False
        graph.set_dependencies("n0", ["n4999"])
        assert len(graph.find_cycle_nodes()) == 5000


class TestValidate:
    def test_unknown_dependency(self):
        graph = _graph(("a", []), ("b", ["a", "ghost"]))
        with pytest.raises(UnknownDependencyError) as exc_info:
            graph.validate("wf")
        assert exc_info.value.step_id == "b"
        assert exc_info.value.missing_deps == ["ghost"]

    def test_cycle(self):
        graph = _graph(("a", ["c"]), ("b", ["a"]), ("c", ["b"]))
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.validate("wf")
        assert exc_info.value.cycle == ["a", "b", "c"]

    def test_valid(self):
        _graph(("a", []), ("b", ["a"])).validate()


# ---------------------------------------------------------------------------
# Scheduling queries
# ---------------------------------------------------------------------------


class TestEligibleNodes:
    def test_roots_first(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", []))
        statuses = {"a": StepStatus.PENDING, "b": StepStatus.PENDING, "c": StepStatus.PENDING}
        assert graph.eligible_nodes(statuses) == ["a", "c"]

    def test_dependency_must_be_completed(self):
        graph = _graph(("a", []), ("b", ["a"]))
        assert graph.eligible_nodes({"a": StepStatus.RUNNING, "b": StepStatus.PENDING}) == []
        assert graph.eligible_nodes({"a": StepStatus.COMPLETED, "b": StepStatus.PENDING}) == ["b"]

    def test_failed_dependency_blocks(self):
        graph = _graph(("a", []), ("b", ["a"]))
        assert graph.eligible_nodes({"a": StepStatus.FAILED, "b": StepStatus.PENDING}) == []

    def test_non_pending_never_eligible(self):
        graph = _graph(("a", []))
        for status in (StepStatus.RUNNING, StepStatus.RETRYING, StepStatus.COMPLETED, StepStatus.FAILED):
            assert graph.eligible_nodes({"a": status}) == []

    def test_accepts_plain_strings(self):
        graph = _graph(("a", []), ("b", ["a"]))
        assert graph.eligible_nodes({"a": "completed", "b": "pending"}) == ["b"]

    def test_declaration_order(self):
        graph = _graph(("z", []), ("m", []), ("a", []))
        assert graph.eligible_nodes({}) == ["z", "m", "a"]


class TestAffectedBy:
    def test_reflexive_transitive(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", ["b"]), ("d", []))
        assert graph.affected_by(["b"]) == {"b", "c"}
        assert graph.affected_by(["a"]) == {"a", "b", "c"}
        assert graph.affected_by(["d"]) == {"d"}

    def test_diamond(self):
        graph = _graph(("a", []), ("b", ["a"]), ("c", ["a"]), ("d", ["b", "c"]))
        assert graph.affected_by(["c"]) == {"c", "d"}

    def test_multiple_roots(self):
        graph = _graph(("a", []), ("b", []), ("c", ["a"]), ("d", ["b"]))
        assert graph.affected_by(["a", "b"]) == {"a", "b", "c", "d"}

    def test_empty(self):
        assert _graph(("a", [])).affected_by([]) == set()

    def test_unknown(self):
        with pytest.raises(KeyError):
            _graph(("a", [])).affected_by(["x"])


class TestTopologicalOrder:
    def test_dependencies_first(self):
        graph = _graph(("c", ["b"]), ("b", ["a"]), ("a", []))
        assert graph.topological_order() == ["a", "b", "c"]

    def test_ties_follow_declaration_order(self):
        graph = _graph(("a", []), ("c", ["a"]), ("b", ["a"]), ("d", ["b", "c"]))
        assert graph.topological_order() == ["a", "c", "b", "d"]

    def test_cycle(self):
        with pytest.raises(CyclicDependencyError):
            _graph(("a", ["b"]), ("b", ["a"])).topological_order()
