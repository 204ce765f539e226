"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE: it depends on pydantic and the standard
library only, never on hubflow.core, hubflow.engine or hubflow.plugins.

Import patterns:
    from hubflow.contracts import PipelineDefinition, StepResult, StepType
"""

from hubflow.contracts.adapter import (
    AdapterDefinition,
    ConfigField,
    FieldDependency,
    FieldType,
    FieldValidation,
    GenericAdapterConfig,
)
from hubflow.contracts.definition import (
    DefinitionModel,
    ErrorHandlingConfig,
    EventTrigger,
    HookAction,
    ManualTrigger,
    PauseOnErrorRate,
    PipelineContext,
    PipelineDefinition,
    PipelineEdge,
    PipelineStepDefinition,
    RouteBranch,
    RouteCondition,
    RouteConfig,
    ScheduleTrigger,
    ThroughputConfig,
    Trigger,
    WebhookTrigger,
)
from hubflow.contracts.enums import (
    RETRYABLE_STAGES,
    AdapterCategory,
    Comparator,
    DeadLetterStatus,
    DrainStrategy,
    ErrorStage,
    HmacAlgorithm,
    HookActionType,
    HookCategory,
    HookStage,
    RunStatus,
    Severity,
    ShedPolicy,
    StepStatus,
    StepType,
    TriggerType,
    ValidationLevel,
    WebhookAuth,
)
from hubflow.contracts.errors import (
    AdapterAuthenticationError,
    AdapterConfigurationError,
    AdapterConnectionError,
    AdapterRegistrationError,
    AdapterTimeoutError,
    CompileError,
    ErrorSummary,
    InvalidPatchError,
    IssueCode,
    PipelineError,
    PipelineNotFoundError,
    RateLimitedError,
    RecordErrorNotFoundError,
    RunCancelledError,
    RunNotFoundError,
    ValidationIssue,
    classify_exception,
    to_pipeline_error,
)
from hubflow.contracts.results import (
    AdapterResult,
    ConsumerStatus,
    DryRunResult,
    DryRunSample,
    PipelineQueueStats,
    PipelineRun,
    QueueStats,
    Record,
    RecordError,
    RunMetrics,
    StepError,
    StepMetrics,
    StepResult,
    ValidationReport,
)

__all__ = [
    "RETRYABLE_STAGES",
    "AdapterAuthenticationError",
    "AdapterCategory",
    "AdapterConfigurationError",
    "AdapterConnectionError",
    "AdapterDefinition",
    "AdapterRegistrationError",
    "AdapterResult",
    "AdapterTimeoutError",
    "Comparator",
    "CompileError",
    "ConfigField",
    "ConsumerStatus",
    "DeadLetterStatus",
    "DefinitionModel",
    "DrainStrategy",
    "DryRunResult",
    "DryRunSample",
    "ErrorHandlingConfig",
    "ErrorStage",
    "ErrorSummary",
    "EventTrigger",
    "FieldDependency",
    "FieldType",
    "FieldValidation",
    "GenericAdapterConfig",
    "HmacAlgorithm",
    "HookAction",
    "HookActionType",
    "HookCategory",
    "HookStage",
    "InvalidPatchError",
    "IssueCode",
    "ManualTrigger",
    "PauseOnErrorRate",
    "PipelineContext",
    "PipelineDefinition",
    "PipelineEdge",
    "PipelineError",
    "PipelineNotFoundError",
    "PipelineQueueStats",
    "PipelineRun",
    "PipelineStepDefinition",
    "QueueStats",
    "RateLimitedError",
    "Record",
    "RecordError",
    "RecordErrorNotFoundError",
    "RouteBranch",
    "RouteCondition",
    "RouteConfig",
    "RunCancelledError",
    "RunMetrics",
    "RunNotFoundError",
    "RunStatus",
    "ScheduleTrigger",
    "Severity",
    "ShedPolicy",
    "StepError",
    "StepMetrics",
    "StepResult",
    "StepStatus",
    "StepType",
    "ThroughputConfig",
    "Trigger",
    "TriggerType",
    "ValidationIssue",
    "ValidationLevel",
    "ValidationReport",
    "WebhookAuth",
    "WebhookTrigger",
    "classify_exception",
    "to_pipeline_error",
]
