# src/hubflow/core/dag/models.py
"""Types and exceptions for step graph operations.

Leaf module, no intra-package imports besides contracts.
"""

from __future__ import annotations

from dataclasses import dataclass

from hubflow.contracts.enums import StepType


class GraphValidationError(ValueError):
    """Raised when the step graph is structurally invalid."""

    def __init__(self, message: str, node_ids: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.node_ids = node_ids


@dataclass(frozen=True, slots=True)
class StepNodeInfo:
    key: str
    step_type: StepType
    order: int | None = None


@dataclass(frozen=True, slots=True)
class EdgeInfo:
    """An edge of the step graph.

    ``branch`` routes one ROUTE branch along the edge; ``condition`` is an
    expression filtering the records that flow along it.
    """

    edge_id: str
    from_key: str
    to_key: str
    branch: str | None = None
    condition: str | None = None


def suggest_similar(name: str, candidates: list[str]) -> list[str]:
    """Suggest similar names for unknown-reference errors."""
    import difflib

    return difflib.get_close_matches(name, candidates, n=3, cutoff=0.6)
