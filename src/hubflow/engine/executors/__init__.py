# src/hubflow/engine/executors/__init__.py
"""Step execution: adapter invocation, chunking, retries and error capture."""

from hubflow.engine.executors.step import StepExecutor
from hubflow.engine.executors.types import ChunkOutcome, StepRunContext

__all__ = ["ChunkOutcome", "StepExecutor", "StepRunContext"]
