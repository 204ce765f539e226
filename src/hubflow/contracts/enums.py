# src/hubflow/contracts/enums.py
"""All status codes, modes, and kinds used across subsystem boundaries.

Values are the wire representation used in pipeline definitions, so they
stay upper-case to match what definitions authored in the editor contain.
"""

from enum import StrEnum


class StepType(StrEnum):
    """Type of a step in a pipeline graph."""

    TRIGGER = "TRIGGER"
    EXTRACT = "EXTRACT"
    TRANSFORM = "TRANSFORM"
    VALIDATE = "VALIDATE"
    ENRICH = "ENRICH"
    ROUTE = "ROUTE"
    LOAD = "LOAD"
    EXPORT = "EXPORT"
    FEED = "FEED"
    SINK = "SINK"

    @property
    def has_side_effects(self) -> bool:
        """Whether steps of this type write to an external system."""
        return self in _SIDE_EFFECT_TYPES


_SIDE_EFFECT_TYPES = frozenset({StepType.LOAD, StepType.EXPORT, StepType.FEED, StepType.SINK})


class AdapterCategory(StrEnum):
    """Catalog grouping for adapters, used by the editor palette."""

    DATA_SOURCE = "DATA_SOURCE"
    TRANSFORMATION = "TRANSFORMATION"
    FILTERING = "FILTERING"
    ENRICHMENT = "ENRICHMENT"
    AGGREGATION = "AGGREGATION"
    CONVERSION = "CONVERSION"
    VALIDATION = "VALIDATION"
    ROUTING = "ROUTING"
    DESTINATION = "DESTINATION"
    UTILITY = "UTILITY"


class StepStatus(StrEnum):
    """Status of a single step within a run."""

    IDLE = "IDLE"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class RunStatus(StrEnum):
    """Status of a pipeline run.

    Transitions: PENDING -> RUNNING -> {SUCCESS, ERROR, CANCELLED}.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED)


class ErrorStage(StrEnum):
    """Where in the pipeline an error originated."""

    EXTRACTION = "EXTRACTION"
    TRANSFORMATION = "TRANSFORMATION"
    VALIDATION = "VALIDATION"
    LOADING = "LOADING"
    CONNECTION = "CONNECTION"
    AUTHENTICATION = "AUTHENTICATION"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    CONFIGURATION = "CONFIGURATION"
    SYSTEM = "SYSTEM"
    UNKNOWN = "UNKNOWN"


# Transient failures. Everything else fails the attempt immediately.
RETRYABLE_STAGES = frozenset({ErrorStage.CONNECTION, ErrorStage.TIMEOUT, ErrorStage.RATE_LIMIT})


class Severity(StrEnum):
    FATAL = "FATAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class DrainStrategy(StrEnum):
    """What a step does when its error rate crosses the pause threshold.

    Values:
        BACKOFF: Delay admission of further chunks, growing exponentially
        SHED: Stop admitting chunks, counting the remainder as dropped
        QUEUE: Buffer chunks until the error rate recovers
    """

    BACKOFF = "BACKOFF"
    SHED = "SHED"
    QUEUE = "QUEUE"


class ShedPolicy(StrEnum):
    """What happens to chunks already in flight when SHED engages."""

    FINISH = "FINISH"
    DROP = "DROP"


class HookStage(StrEnum):
    """Points in a run where hook listeners are notified."""

    PIPELINE_STARTED = "PIPELINE_STARTED"
    PIPELINE_COMPLETED = "PIPELINE_COMPLETED"
    PIPELINE_FAILED = "PIPELINE_FAILED"
    BEFORE_EXTRACT = "BEFORE_EXTRACT"
    AFTER_EXTRACT = "AFTER_EXTRACT"
    BEFORE_TRANSFORM = "BEFORE_TRANSFORM"
    AFTER_TRANSFORM = "AFTER_TRANSFORM"
    BEFORE_VALIDATE = "BEFORE_VALIDATE"
    AFTER_VALIDATE = "AFTER_VALIDATE"
    BEFORE_ENRICH = "BEFORE_ENRICH"
    AFTER_ENRICH = "AFTER_ENRICH"
    BEFORE_ROUTE = "BEFORE_ROUTE"
    AFTER_ROUTE = "AFTER_ROUTE"
    BEFORE_LOAD = "BEFORE_LOAD"
    AFTER_LOAD = "AFTER_LOAD"
    ON_ERROR = "ON_ERROR"
    ON_RETRY = "ON_RETRY"
    ON_DEAD_LETTER = "ON_DEAD_LETTER"


class HookCategory(StrEnum):
    LIFECYCLE = "lifecycle"
    DATA = "data"
    ERROR = "error"


class HookActionType(StrEnum):
    """Actions a definition can attach to a hook stage.

    Values:
        LOG: Write the payload to the run log at the configured level
        EMIT: Re-publish the payload to listeners under a custom event name
    """

    LOG = "LOG"
    EMIT = "EMIT"


class Comparator(StrEnum):
    """Comparison operators available to route branch conditions."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    NOT_IN = "notIn"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    MATCHES = "matches"
    REGEX = "regex"
    EXISTS = "exists"
    IS_NULL = "isNull"


class TriggerType(StrEnum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"


class WebhookAuth(StrEnum):
    NONE = "NONE"
    API_KEY = "API_KEY"
    HMAC = "HMAC"
    BASIC = "BASIC"
    JWT = "JWT"


class HmacAlgorithm(StrEnum):
    SHA256 = "SHA256"
    SHA512 = "SHA512"


class ValidationLevel(StrEnum):
    """How strictly validate() treats non-fatal findings.

    Values:
        WARN: Stray branch references and similar findings are warnings
        STRICT: The same findings are reported as errors
    """

    WARN = "warn"
    STRICT = "strict"


class DeadLetterStatus(StrEnum):
    """Lifecycle of a captured record error.

    Values:
        DEAD_LETTER: Retry budget exhausted; eligible for patch-and-retry
        RESOLVED: A patch-and-retry replay processed the record cleanly
        DEAD: Operator excluded the record from any further reprocessing
    """

    DEAD_LETTER = "DEAD_LETTER"
    RESOLVED = "RESOLVED"
    DEAD = "DEAD"
