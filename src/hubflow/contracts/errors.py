# src/hubflow/contracts/errors.py
"""Exceptions and validation issue types shared across subsystems.

Record-level failures are NOT exceptions: adapters return them as
RecordError values (see hubflow.contracts.results). Exceptions here signal
a failed attempt, a broken definition, or a missing entity.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from hubflow.contracts.enums import RETRYABLE_STAGES, ErrorStage, Severity, StepType


class IssueCode(StrEnum):
    """Machine-readable codes for definition validation findings."""

    REQUIRED = "REQUIRED"
    INVALID_TYPE = "INVALID_TYPE"
    INVALID_FORMAT = "INVALID_FORMAT"
    TOO_SHORT = "TOO_SHORT"
    TOO_LONG = "TOO_LONG"
    TOO_SMALL = "TOO_SMALL"
    TOO_LARGE = "TOO_LARGE"
    NOT_IN_ENUM = "NOT_IN_ENUM"
    UNKNOWN_ADAPTER = "UNKNOWN_ADAPTER"
    ADAPTER_TYPE_MISMATCH = "ADAPTER_TYPE_MISMATCH"
    DUPLICATE_KEY = "DUPLICATE_KEY"
    DANGLING_EDGE = "DANGLING_EDGE"
    CYCLE = "CYCLE"
    UNKNOWN_BRANCH = "UNKNOWN_BRANCH"
    MISSING_BRANCH = "MISSING_BRANCH"
    INVALID_EXPRESSION = "INVALID_EXPRESSION"
    UNREACHABLE = "UNREACHABLE"
    INEFFECTIVE_RETRY = "INEFFECTIVE_RETRY"
    INVALID_ROOT_COUNT = "INVALID_ROOT_COUNT"
    INVALID_ROOT_TYPE = "INVALID_ROOT_TYPE"
    NO_LOAD_REACHABLE = "NO_LOAD_REACHABLE"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """A single finding produced while validating a pipeline definition.

    Attributes:
        code: Machine-readable issue code
        message: Human-readable description
        step_key: Step the issue belongs to (None for graph-level issues)
        field: Config field path within the step, when applicable
    """

    code: IssueCode
    message: str
    step_key: str | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "stepKey": self.step_key,
            "field": self.field,
        }


class PipelineError(Exception):
    """Error raised while executing a pipeline.

    Carries the stage the failure is attributed to. Only CONNECTION, TIMEOUT
    and RATE_LIMIT failures are retried; AUTHENTICATION and CONFIGURATION
    failures never are.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: ErrorStage = ErrorStage.UNKNOWN,
        severity: Severity = Severity.ERROR,
        step_key: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.severity = severity
        self.step_key = step_key
        self.code = code or stage.value
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.stage in RETRYABLE_STAGES

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "stage": self.stage.value,
            "severity": self.severity.value,
            "stepKey": self.step_key,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class CompileError(PipelineError):
    """Raised when a definition cannot be compiled into an execution plan."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(f"[{i.code}] {i.message}" for i in self.issues) or "invalid pipeline definition"
        super().__init__(
            f"Pipeline definition failed to compile: {summary}",
            stage=ErrorStage.CONFIGURATION,
            severity=Severity.FATAL,
            code="COMPILE_ERROR",
        )


class AdapterConnectionError(PipelineError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.CONNECTION, **kwargs)


class AdapterTimeoutError(PipelineError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.TIMEOUT, **kwargs)


class RateLimitedError(PipelineError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.RATE_LIMIT, **kwargs)


class AdapterAuthenticationError(PipelineError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.AUTHENTICATION, severity=Severity.FATAL, **kwargs)


class AdapterConfigurationError(PipelineError):
    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.CONFIGURATION, severity=Severity.FATAL, **kwargs)


class RunCancelledError(PipelineError):
    """Raised inside a step when a cancellation request is observed."""

    def __init__(self, message: str = "Run cancelled", **kwargs: Any) -> None:
        super().__init__(message, stage=ErrorStage.SYSTEM, severity=Severity.INFO, code="CANCELLED", **kwargs)


class AdapterRegistrationError(ValueError):
    """Raised when an adapter cannot be added to the registry."""


class PipelineNotFoundError(KeyError):
    """Raised when a pipeline id or code is not known to the service."""


class RunNotFoundError(KeyError):
    """Raised when a run id is not known to the service."""


class RecordErrorNotFoundError(KeyError):
    """Raised when a record error id does not exist in the dead-letter store."""


class InvalidPatchError(ValueError):
    """Raised when a retry patch is not a JSON object or cannot be serialized."""


# Stage attributed to generic data errors, by the type of step raising them.
_STEP_TYPE_STAGES: dict[StepType, ErrorStage] = {
    StepType.TRIGGER: ErrorStage.EXTRACTION,
    StepType.EXTRACT: ErrorStage.EXTRACTION,
    StepType.TRANSFORM: ErrorStage.TRANSFORMATION,
    StepType.ENRICH: ErrorStage.TRANSFORMATION,
    StepType.ROUTE: ErrorStage.TRANSFORMATION,
    StepType.VALIDATE: ErrorStage.VALIDATION,
    StepType.LOAD: ErrorStage.LOADING,
    StepType.EXPORT: ErrorStage.LOADING,
    StepType.FEED: ErrorStage.LOADING,
    StepType.SINK: ErrorStage.LOADING,
}


def stage_for_step_type(step_type: StepType) -> ErrorStage:
    return _STEP_TYPE_STAGES[step_type]


def classify_exception(exc: BaseException, step_type: StepType | None = None) -> ErrorStage:
    """Attribute an exception raised by an adapter to an error stage.

    Args:
        exc: Exception raised by the adapter call
        step_type: Type of the step that raised it (refines data errors)

    Returns:
        The ErrorStage used for retry decisions and reporting
    """
    if isinstance(exc, PipelineError):
        return exc.stage
    # TimeoutError is an OSError subclass, so it must be checked first
    if isinstance(exc, TimeoutError):
        return ErrorStage.TIMEOUT
    if isinstance(exc, PermissionError):
        return ErrorStage.AUTHENTICATION
    if isinstance(exc, ConnectionError | socket.gaierror):
        return ErrorStage.CONNECTION
    if isinstance(exc, ValueError | TypeError | KeyError) and step_type is not None:
        return stage_for_step_type(step_type)
    return ErrorStage.UNKNOWN


def to_pipeline_error(exc: BaseException, *, step_key: str | None, step_type: StepType | None) -> PipelineError:
    """Wrap an arbitrary exception as a PipelineError, preserving PipelineErrors."""
    if isinstance(exc, PipelineError):
        if exc.step_key is None:
            exc.step_key = step_key
        return exc
    error = PipelineError(
        str(exc) or type(exc).__name__,
        stage=classify_exception(exc, step_type),
        step_key=step_key,
        details={"exception_type": type(exc).__name__},
    )
    error.__cause__ = exc
    return error


@dataclass(frozen=True, slots=True)
class ErrorSummary:
    """Serializable summary of the terminal error of a run."""

    message: str
    stage: ErrorStage
    step_key: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: PipelineError) -> ErrorSummary:
        return cls(message=error.message, stage=error.stage, step_key=error.step_key, details=dict(error.details))
