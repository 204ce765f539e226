# src/hubflow/plugins/protocols.py
"""Adapter protocol and the context handed to adapters.

Protocols are used for type checking; registration-time checks are done by
the AdapterRegistry, which reads the declared class attributes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from pydantic import BaseModel

from hubflow.contracts.adapter import ConfigField
from hubflow.contracts.enums import AdapterCategory, StepType

if TYPE_CHECKING:
    from hubflow.contracts.results import AdapterResult, Record
    from hubflow.engine.cancellation import CancellationToken


@dataclass(frozen=True)
class AdapterContext:
    """Per-step execution context.

    Attributes:
        run_id: Run being executed
        pipeline_id: Pipeline the run belongs to
        step_key: Step invoking the adapter
        variables: Pipeline variables (read-only by convention)
        dry_run: True when the run is a dry run
        resources: Shared collaborators provided by the service (stores, clients)
        cancel: The run's cancellation token
    """

    run_id: str
    pipeline_id: str
    step_key: str
    step_type: StepType
    variables: Mapping[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    resources: Mapping[str, Any] = field(default_factory=dict)
    cancel: CancellationToken | None = None


@runtime_checkable
class AdapterProtocol(Protocol):
    """Protocol for adapters.

    An adapter processes one chunk of records per execute() call and
    reports per-record failures as RecordError values in the result rather
    than raising. Raising means the whole attempt failed: the executor
    classifies the exception and retries transient failures.

    execute() may be called concurrently from several worker threads for
    different chunks of the same step.

    Lifecycle:
        - __init__(config): Called once per step execution with the typed config
        - execute(records, ctx): Called once per chunk
        - close(): Called after the step finishes
    """

    code: ClassVar[str]
    step_type: ClassVar[StepType]
    name: ClassVar[str]
    category: ClassVar[AdapterCategory]
    description: ClassVar[str]
    config_model: ClassVar[type[BaseModel] | None]
    config_fields: ClassVar[tuple[ConfigField, ...]]
    pure: ClassVar[bool]
    is_async: ClassVar[bool]
    batchable: ClassVar[bool]
    retryable: ClassVar[bool]
    writes: ClassVar[tuple[str, ...]]

    def __init__(self, config: BaseModel) -> None: ...

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        """Process one chunk.

        Args:
            records: Chunk of input records (empty for root steps without seed data)
            ctx: Execution context

        Returns:
            AdapterResult with surviving records, per-record errors and drop count
        """
        ...

    def close(self) -> None: ...
