# tests/core/test_step_graph.py
"""Tests for StepGraph staging and validation."""

import pytest

from hubflow.contracts.enums import StepType
from hubflow.core.dag import GraphValidationError, StepGraph, suggest_similar


def _graph(*edges: tuple[str, str], nodes: tuple[str, ...] = ()) -> StepGraph:
    graph = StepGraph()
    keys = list(dict.fromkeys([*nodes, *[k for e in edges for k in e]]))
    for key in keys:
        graph.add_step(key, StepType.TRANSFORM)
    for source, target in edges:
        graph.add_edge(source, target)
    return graph


class TestStepGraphStages:
    def test_diamond(self) -> None:
        graph = _graph(("a", "b"), ("a", "c"), ("b", "d"), ("c", "d"))

        assert graph.stages() == [("a",), ("b", "c"), ("d",)]
        assert graph.predecessors("d") == ["b", "c"]

    def test_stage_ordered_by_order_then_key(self) -> None:
        graph = StepGraph()
        graph.add_step("zeta", StepType.EXTRACT, order=1)
        graph.add_step("alpha", StepType.EXTRACT, order=2)
        graph.add_step("beta", StepType.EXTRACT)

        assert graph.stages() == [("beta", "zeta", "alpha")]

    def test_parallel_edges_between_same_steps(self) -> None:
        graph = _graph(("route", "sink"))
        graph.add_edge("route", "sink", branch="other")

        assert len(graph.out_edges("route")) == 2
        assert {e.branch for e in graph.in_edges("sink")} == {None, "other"}
        assert graph.predecessors("sink") == ["route"]


class TestStepGraphReachability:
    def test_roots(self) -> None:
        graph = _graph(("b", "c"), ("a", "c"), nodes=("lonely",))

        assert graph.roots() == ["a", "b", "lonely"]

    def test_reachable_from(self) -> None:
        graph = _graph(("a", "b"), ("b", "c"), ("x", "y"))

        assert graph.reachable_from(["a"]) == {"a", "b", "c"}
        assert graph.reachable_from(["b", "x"]) == {"b", "c", "x", "y"}
        assert graph.reachable_from([]) == set()


class TestStepGraphValidation:
    def test_unknown_endpoint(self) -> None:
        graph = _graph(nodes=("a",))

        with pytest.raises(GraphValidationError) as exc_info:
            graph.add_edge("a", "ghost")

        assert exc_info.value.node_ids == ("ghost",)

    def test_cycle_reported_with_nodes(self) -> None:
        graph = _graph(("a", "b"), ("b", "c"), ("c", "a"), ("c", "d"))

        assert not graph.is_acyclic()
        assert graph.cycle_nodes() == ["a", "b", "c"]
        with pytest.raises(GraphValidationError, match="cycle"):
            graph.stages()

    def test_self_loop_is_a_cycle(self) -> None:
        graph = _graph(("a", "a"))
        assert graph.cycle_nodes() == ["a"]


class TestSuggestSimilar:
    def test_close_match(self) -> None:
        assert suggest_similar("transfrom", ["transform", "validate"]) == ["transform"]

    def test_no_match(self) -> None:
        assert suggest_similar("zzz", ["transform"]) == []
