# src/hubflow/core/dag/graph.py
"""StepGraph: query, validation, and staging operations on a step graph.

Wraps a NetworkX MultiDiGraph so that two steps may be connected by more
than one edge (a ROUTE step sending two branches to the same target).
"""

from __future__ import annotations

from itertools import count

import networkx as nx
from networkx import MultiDiGraph

from hubflow.contracts.enums import StepType
from hubflow.core.dag.models import EdgeInfo, GraphValidationError, StepNodeInfo


class StepGraph:
    """Directed graph of pipeline steps."""

    def __init__(self) -> None:
        self._graph: MultiDiGraph[str] = nx.MultiDiGraph()
        self._edge_ids = count(1)

    def add_step(self, key: str, step_type: StepType, *, order: int | None = None) -> None:
        self._graph.add_node(key, info=StepNodeInfo(key=key, step_type=step_type, order=order))

    def add_edge(
        self,
        from_key: str,
        to_key: str,
        *,
        branch: str | None = None,
        condition: str | None = None,
        edge_id: str | None = None,
    ) -> EdgeInfo:
        """Add an edge between two existing steps.

        Raises:
            GraphValidationError: If either endpoint is not a step
        """
        missing = tuple(k for k in (from_key, to_key) if not self._graph.has_node(k))
        if missing:
            raise GraphValidationError(f"Edge {from_key} -> {to_key} references unknown step(s): {', '.join(missing)}", missing)
        edge = EdgeInfo(
            edge_id=edge_id or f"e{next(self._edge_ids)}",
            from_key=from_key,
            to_key=to_key,
            branch=branch,
            condition=condition,
        )
        self._graph.add_edge(from_key, to_key, key=edge.edge_id, info=edge)
        return edge

    def get_node_info(self, key: str) -> StepNodeInfo:
        if not self._graph.has_node(key):
            raise KeyError(f"Step not found: {key}")
        info: StepNodeInfo = self._graph.nodes[key]["info"]
        return info

    def is_acyclic(self) -> bool:
        return bool(nx.is_directed_acyclic_graph(self._graph))

    def cycle_nodes(self) -> list[str]:
        """Step keys participating in a cycle, sorted.

        A strongly connected component with more than one node, or a node
        with an edge to itself, is a cycle.
        """
        offending: set[str] = set()
        for component in nx.strongly_connected_components(self._graph):
            if len(component) > 1:
                offending.update(component)
        offending.update(n for n in self._graph.nodes if self._graph.has_edge(n, n))
        return sorted(offending)

    def validate(self) -> None:
        """Raise if the graph contains a cycle.

        Raises:
            GraphValidationError: Naming the steps on the cycle
        """
        if self.is_acyclic():
            return
        nodes = tuple(self.cycle_nodes())
        try:
            cycle = nx.find_cycle(self._graph)
            cycle_str = " -> ".join([str(edge[0]) for edge in cycle] + [str(cycle[0][0])])
            raise GraphValidationError(f"Graph contains a cycle: {cycle_str}", nodes)
        except nx.NetworkXNoCycle:
            raise GraphValidationError("Graph contains a cycle", nodes) from None

    def _sort_key(self, key: str) -> tuple[int, str]:
        order = self.get_node_info(key).order
        return (order if order is not None else 0, key)

    def stages(self) -> list[tuple[str, ...]]:
        """Group steps into stages that may execute in parallel.

        Every step lands in the stage after the last of its predecessors, so
        steps sharing a stage have no path between them. Within a stage,
        steps are ordered by their ``order`` then key.

        Raises:
            GraphValidationError: If the graph has cycles
        """
        self.validate()
        return [tuple(sorted(generation, key=self._sort_key)) for generation in nx.topological_generations(self._graph)]

    def out_edges(self, key: str) -> list[EdgeInfo]:
        return [data["info"] for _, _, data in self._graph.out_edges(key, data=True)]

    def in_edges(self, key: str) -> list[EdgeInfo]:
        return [data["info"] for _, _, data in self._graph.in_edges(key, data=True)]

    def predecessors(self, key: str) -> list[str]:
        return sorted(self._graph.predecessors(key))

    def roots(self) -> list[str]:
        """Steps without incoming edges."""
        return sorted((n for n in self._graph.nodes if self._graph.in_degree(n) == 0), key=self._sort_key)

    def reachable_from(self, keys: list[str]) -> set[str]:
        """``keys`` and every step downstream of them."""
        reached = set(keys)
        for key in keys:
            reached.update(nx.descendants(self._graph, key))
        return reached
