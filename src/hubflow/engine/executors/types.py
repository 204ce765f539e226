# src/hubflow/engine/executors/types.py
"""Shared types for executor modules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from hubflow.contracts.definition import ErrorHandlingConfig
from hubflow.contracts.errors import PipelineError
from hubflow.contracts.results import Record, RecordError
from hubflow.engine.cancellation import CancellationToken

if TYPE_CHECKING:
    from hubflow.core.dead_letter import DeadLetterStore
    from hubflow.engine.hooks import HookDispatcher


@dataclass(frozen=True)
class StepRunContext:
    """Run-scoped collaborators handed to the StepExecutor for every step.

    Attributes:
        capture_dead_letters: False for replays, whose failures are reported
            on the retry audit instead of creating new entries
    """

    run_id: str
    pipeline_id: str
    hooks: HookDispatcher
    cancel: CancellationToken = field(default_factory=CancellationToken)
    variables: Mapping[str, Any] = field(default_factory=dict)
    error_handling: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)
    idempotency_key_field: str | None = None
    dead_letters: DeadLetterStore | None = None
    capture_dead_letters: bool = True
    dry_run: bool = False
    resources: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ChunkOutcome:
    """What one chunk produced after step and record retries.

    ``errors`` pairs each final RecordError with its index in the step's
    input, so StepErrors can report positions relative to the whole batch.
    """

    index: int
    offset: int
    input_count: int
    records: list[Record] = field(default_factory=list)
    branches: dict[str, list[Record]] | None = None
    errors: list[RecordError] = field(default_factory=list)
    dropped: int = 0
    meta: dict[str, Any] = field(default_factory=dict)
    failure: PipelineError | None = None
    record_retries: int = 0

    @property
    def output_count(self) -> int:
        if self.branches is not None:
            return sum(len(records) for records in self.branches.values())
        return len(self.records)
