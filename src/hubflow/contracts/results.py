# src/hubflow/contracts/results.py
"""Result types returned by adapters, steps, runs and service operations.

These are dataclasses rather than pydantic models: they are built by the
engine from already-validated data, never from user input. Every type that
leaves the service exposes ``to_dict()`` producing the camelCase wire shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hubflow.contracts.enums import RunStatus, StepStatus, StepType
from hubflow.contracts.errors import ErrorSummary, ValidationIssue

Record = dict[str, Any]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True, slots=True)
class RecordError:
    """A per-record failure reported by an adapter.

    Attributes:
        index: Position of the record in the chunk handed to the adapter
        message: Human-readable description
        code: Machine-readable code (e.g. REQUIRED)
        field: Offending field, when applicable
        retryable: Whether resubmitting the same record might succeed
        record: The failing record as the adapter saw it
    """

    index: int
    message: str
    code: str | None = None
    field: str | None = None
    retryable: bool = False
    record: Record | None = None


@dataclass
class AdapterResult:
    """What an adapter returns for one chunk.

    ``records`` are the surviving output records. Records an adapter
    deliberately filters out are counted in ``dropped``; records that failed
    appear in ``errors``. ROUTE adapters fill ``branches`` instead of
    ``records``.
    """

    records: list[Record] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    dropped: int = 0
    branches: dict[str, list[Record]] | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepError:
    message: str
    code: str | None = None
    field: str | None = None
    record_index: int | None = None
    retryable: bool = False

    @classmethod
    def from_record_error(cls, error: RecordError, offset: int = 0) -> StepError:
        return cls(
            message=error.message,
            code=error.code,
            field=error.field,
            record_index=error.index + offset,
            retryable=error.retryable,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "field": self.field,
            "recordIndex": self.record_index,
            "retryable": self.retryable,
        }


@dataclass(frozen=True, slots=True)
class StepMetrics:
    input_records: int
    output_records: int
    error_records: int
    dropped_records: int
    duration_ms: float
    throughput: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputRecords": self.input_records,
            "outputRecords": self.output_records,
            "errorRecords": self.error_records,
            "droppedRecords": self.dropped_records,
            "duration": self.duration_ms,
            "throughput": self.throughput,
        }


@dataclass
class StepResult:
    """Outcome of executing one step.

    ``output`` holds the records fed to successors; for ROUTE steps
    ``branches`` holds them per branch name instead.
    """

    step_key: str
    step_type: StepType
    status: StepStatus
    input_count: int = 0
    output_count: int = 0
    error_count: int = 0
    dropped_count: int = 0
    duration_ms: float = 0.0
    errors: list[StepError] = field(default_factory=list)
    output: list[Record] = field(default_factory=list)
    branches: dict[str, list[Record]] | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    failure: ErrorSummary | None = None

    @property
    def metrics(self) -> StepMetrics:
        seconds = self.duration_ms / 1000.0
        throughput = self.input_count / seconds if seconds > 0 else 0.0
        return StepMetrics(
            input_records=self.input_count,
            output_records=self.output_count,
            error_records=self.error_count,
            dropped_records=self.dropped_count,
            duration_ms=self.duration_ms,
            throughput=throughput,
        )

    @property
    def succeeded(self) -> bool:
        return self.status in (StepStatus.SUCCESS, StepStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepKey": self.step_key,
            "type": self.step_type.value,
            "status": self.status.value,
            "inputCount": self.input_count,
            "outputCount": self.output_count,
            "errorCount": self.error_count,
            "droppedCount": self.dropped_count,
            "duration": self.duration_ms,
            "errors": [e.to_dict() for e in self.errors],
            "meta": dict(self.meta),
        }


@dataclass
class RunMetrics:
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    dropped_records: int = 0
    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "processedRecords": self.processed_records,
            "failedRecords": self.failed_records,
            "droppedRecords": self.dropped_records,
            "stepsCompleted": self.steps_completed,
            "stepsFailed": self.steps_failed,
            "stepsSkipped": self.steps_skipped,
            "duration": self.duration_ms,
        }


@dataclass
class PipelineRun:
    """State of a run. Mutated only by the orchestrator that owns it."""

    id: str
    pipeline_id: str
    status: RunStatus = RunStatus.PENDING
    triggered_by: str = "manual"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    metrics: RunMetrics = field(default_factory=RunMetrics)
    error: ErrorSummary | None = None
    step_results: dict[str, StepResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pipelineId": self.pipeline_id,
            "status": self.status.value,
            "triggeredBy": self.triggered_by,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "metrics": self.metrics.to_dict(),
            "error": None
            if self.error is None
            else {"message": self.error.message, "stage": self.error.stage.value, "stepKey": self.error.step_key},
            "stepResults": {k: r.to_dict() for k, r in self.step_results.items()},
        }


@dataclass(frozen=True, slots=True)
class DryRunSample:
    step_key: str
    before: Record | None
    after: Record | None


@dataclass
class DryRunResult:
    metrics: RunMetrics
    step_results: dict[str, StepResult] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    sample_records: list[DryRunSample] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "notes": list(self.notes),
            "sampleRecords": [{"step": s.step_key, "before": s.before, "after": s.after} for s in self.sample_records],
        }


@dataclass
class ValidationReport:
    is_valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True, slots=True)
class PipelineQueueStats:
    pending: int = 0
    running: int = 0
    failed: int = 0
    completed_today: int = 0


@dataclass
class QueueStats:
    pending: int = 0
    running: int = 0
    failed: int = 0
    completed_today: int = 0
    dead_letters: int = 0
    by_pipeline: dict[str, PipelineQueueStats] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "running": self.running,
            "failed": self.failed,
            "completedToday": self.completed_today,
            "deadLetters": self.dead_letters,
            "byPipeline": {
                code: {
                    "pending": s.pending,
                    "running": s.running,
                    "failed": s.failed,
                    "completedToday": s.completed_today,
                }
                for code, s in self.by_pipeline.items()
            },
        }


@dataclass(frozen=True, slots=True)
class ConsumerStatus:
    pipeline_code: str
    is_active: bool
    messages_processed: int
    messages_failed: int
    in_flight: int
    started_at: datetime | None
    last_message_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipelineCode": self.pipeline_code,
            "isActive": self.is_active,
            "messagesProcessed": self.messages_processed,
            "messagesFailed": self.messages_failed,
            "inFlight": self.in_flight,
            "startedAt": _iso(self.started_at),
            "lastMessageAt": _iso(self.last_message_at),
        }
