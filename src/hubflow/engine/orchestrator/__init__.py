# src/hubflow/engine/orchestrator/__init__.py
"""Orchestrator package: run lifecycle management.

Module structure:
- core.py: RunOrchestrator (main entry point), edge input collection, metrics
- types.py: RunOptions, RunState
"""

from hubflow.engine.orchestrator.core import RunOrchestrator, aggregate_metrics, collect_inputs
from hubflow.engine.orchestrator.types import RunOptions, RunState

__all__ = [
    "RunOptions",
    "RunOrchestrator",
    "RunState",
    "aggregate_metrics",
    "collect_inputs",
]
