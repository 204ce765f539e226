# src/hubflow/core/dag/__init__.py
"""Step graph operations for execution planning."""

from hubflow.core.dag.graph import StepGraph
from hubflow.core.dag.models import (
    EdgeInfo,
    GraphValidationError,
    StepNodeInfo,
    suggest_similar,
)

__all__ = [
    "EdgeInfo",
    "GraphValidationError",
    "StepGraph",
    "StepNodeInfo",
    "suggest_similar",
]
