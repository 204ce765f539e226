# src/hubflow/contracts/definition.py
"""Pipeline definition models.

Definitions arrive as JSON authored in the graph editor, so every model
accepts the camelCase wire names (``adapterCode``, ``continueOnError``) as
well as their snake_case attribute names. Models are frozen: a definition
does not change once a run has compiled it.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from hubflow.contracts.enums import (
    Comparator,
    DrainStrategy,
    HmacAlgorithm,
    HookActionType,
    HookStage,
    ShedPolicy,
    StepType,
    WebhookAuth,
)


class DefinitionModel(BaseModel):
    """Base for all definition models (frozen, camelCase aliases)."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump using wire (camelCase) names, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# === Throughput ===


class PauseOnErrorRate(DefinitionModel):
    """Error-rate threshold that engages the step's drain strategy.

    Example:
        pauseOnErrorRate: {threshold: 0.5, intervalSec: 10}
    """

    threshold: float = Field(gt=0.0, le=1.0, description="Fraction of failed records in the window")
    interval_sec: float = Field(gt=0.0, description="Length of the sliding error window in seconds")


class ThroughputConfig(DefinitionModel):
    """Per-step throughput control."""

    rate_limit_rps: float | None = Field(default=None, gt=0, description="Records admitted per second")
    concurrency: int | None = Field(default=None, ge=1, description="Chunks processed concurrently")
    batch_size: int | None = Field(default=None, ge=1, description="Records per chunk")
    pause_on_error_rate: PauseOnErrorRate | None = None
    drain_strategy: DrainStrategy = DrainStrategy.BACKOFF
    shed_policy: ShedPolicy = ShedPolicy.FINISH


# === Routing ===


class RouteCondition(DefinitionModel):
    """A single field comparison. Conditions within a branch are AND-ed."""

    field: str = Field(min_length=1, description="Dot-separated field path")
    cmp: Comparator
    value: Any = None


class RouteBranch(DefinitionModel):
    name: str = Field(min_length=1)
    when: list[RouteCondition] = Field(default_factory=list)


class RouteConfig(DefinitionModel):
    """Ordered branches; the first branch whose conditions all hold wins."""

    branches: list[RouteBranch] = Field(default_factory=list)
    default_branch: str | None = None

    @field_validator("branches")
    @classmethod
    def validate_unique_names(cls, v: list[RouteBranch]) -> list[RouteBranch]:
        seen: set[str] = set()
        for branch in v:
            if branch.name in seen:
                raise ValueError(f"duplicate branch name: {branch.name!r}")
            seen.add(branch.name)
        return v

    @property
    def branch_names(self) -> frozenset[str]:
        names = {b.name for b in self.branches}
        if self.default_branch is not None:
            names.add(self.default_branch)
        return frozenset(names)


# === Steps and edges ===


class PipelineStepDefinition(DefinitionModel):
    """A node of the pipeline graph.

    ``config`` is opaque here; it is validated against the adapter's declared
    schema at compile time.
    """

    key: str = Field(min_length=1)
    type: StepType
    adapter_code: str | None = None
    name: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    order: int | None = None
    disabled: bool = False

    parallel: bool = False
    async_: bool = Field(default=False, alias="async")
    concurrency: int | None = Field(default=None, ge=1)
    retries: int = Field(default=0, ge=0, description="Extra attempts per adapter call on transient failure")
    retry_delay_ms: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    continue_on_error: bool = False
    condition: str | None = Field(default=None, description="Expression over pipeline variables; false skips the step")
    throughput: ThroughputConfig | None = None

    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.key


class PipelineEdge(DefinitionModel):
    """Directed edge between two steps.

    For ROUTE sources, ``branch`` names the branch whose records flow along
    the edge. ``condition`` filters the records flowing along any edge.
    """

    id: str | None = None
    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    branch: str | None = None
    condition: str | None = None
    label: str | None = None


# === Context, hooks, triggers ===


class ErrorHandlingConfig(DefinitionModel):
    """Pipeline-wide handling of record-level failures."""

    max_retries: int = Field(default=0, ge=0, description="Per-record resubmissions for retriable record errors")
    retry_delay_ms: int = Field(default=0, ge=0)
    dead_letter_queue: bool = True


class PipelineContext(DefinitionModel):
    throughput: ThroughputConfig | None = None
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    idempotency_key_field: str | None = None
    max_concurrent_steps: int | None = Field(default=None, ge=1)


class HookAction(DefinitionModel):
    """Action attached to a hook stage in the definition."""

    type: HookActionType
    level: Literal["debug", "info", "warning", "error"] = "info"
    message: str | None = None
    event: str | None = None

    @model_validator(mode="after")
    def validate_emit_event(self) -> HookAction:
        if self.type == HookActionType.EMIT and not self.event:
            raise ValueError("EMIT hook actions require an event name")
        return self


class _TriggerBase(DefinitionModel):
    key: str | None = None
    enabled: bool = True


class ManualTrigger(_TriggerBase):
    type: Literal["manual"] = "manual"


class ScheduleTrigger(_TriggerBase):
    type: Literal["schedule"] = "schedule"
    cron: str = Field(min_length=1)
    timezone: str = "UTC"


class EventTrigger(_TriggerBase):
    type: Literal["event"] = "event"
    event_type: str = Field(min_length=1)


class WebhookTrigger(_TriggerBase):
    """Webhook trigger. Secret fields hold secret *codes*, never secret values."""

    type: Literal["webhook"] = "webhook"
    path: str | None = None
    authentication: WebhookAuth = WebhookAuth.NONE
    # HMAC
    secret_code: str | None = None
    hmac_header_name: str = "x-datahub-signature"
    hmac_algorithm: HmacAlgorithm = HmacAlgorithm.SHA256
    # API key
    api_key_secret_code: str | None = None
    api_key_header_name: str = "x-api-key"
    api_key_prefix: str | None = None
    # Basic
    basic_secret_code: str | None = None
    # JWT
    jwt_secret_code: str | None = None
    jwt_header_name: str = "authorization"

    require_idempotency_key: bool = False
    rate_limit: int | None = Field(default=None, gt=0, description="Requests per minute per client")

    @field_validator("hmac_algorithm", mode="before")
    @classmethod
    def normalize_algorithm(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


Trigger = Annotated[
    ManualTrigger | ScheduleTrigger | WebhookTrigger | EventTrigger,
    Field(discriminator="type"),
]


# === Pipeline ===


class PipelineDefinition(DefinitionModel):
    """A complete pipeline graph.

    Invariants checked at compile time (not here, so that validate() can
    report every problem at once): unique step keys, edges referencing
    existing steps, an acyclic graph.
    """

    nodes: list[PipelineStepDefinition] = Field(default_factory=list)
    edges: list[PipelineEdge] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    context: PipelineContext = Field(default_factory=PipelineContext)
    hooks: dict[HookStage, list[HookAction]] = Field(default_factory=dict)
    triggers: list[Trigger] = Field(default_factory=list)

    def get_step(self, key: str) -> PipelineStepDefinition:
        for node in self.nodes:
            if node.key == key:
                return node
        raise KeyError(key)

    def all_edges(self) -> list[PipelineEdge]:
        """Explicit edges plus the implicit ones declared via inputs/outputs.

        Implicit edges duplicating an explicit (from, to) pair are dropped.
        """
        edges = list(self.edges)
        seen = {(e.from_, e.to) for e in edges}
        for node in self.nodes:
            implicit = [(node.key, target) for target in node.outputs]
            implicit += [(source, node.key) for source in node.inputs]
            for source, target in implicit:
                if (source, target) in seen:
                    continue
                seen.add((source, target))
                edges.append(PipelineEdge(**{"from": source, "to": target}))
        return edges

    def webhook_triggers(self) -> list[WebhookTrigger]:
        return [t for t in self.triggers if isinstance(t, WebhookTrigger) and t.enabled]
