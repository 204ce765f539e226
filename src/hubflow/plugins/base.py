# src/hubflow/plugins/base.py
"""Base class for adapters.

Subclasses declare their metadata as class attributes and implement
execute(). Per-family typed configs inherit AdapterConfig.

Example:
    class UppercaseConfig(AdapterConfig):
        field: str

    class Uppercase(BaseAdapter):
        code = "uppercase"
        step_type = StepType.TRANSFORM
        name = "Uppercase"
        category = AdapterCategory.TRANSFORMATION
        config_model = UppercaseConfig
        pure = True

        def execute(self, records, ctx):
            cfg = self.typed_config(UppercaseConfig)
            return AdapterResult(records=[{**r, cfg.field: str(r[cfg.field]).upper()} for r in records])
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from hubflow.contracts.adapter import ConfigField
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.results import AdapterResult, Record
from hubflow.plugins.protocols import AdapterContext

C = TypeVar("C", bound=BaseModel)


class AdapterConfig(BaseModel):
    """Base for typed adapter config variants.

    Accepts camelCase keys as written in definitions; unknown keys are
    rejected so typos surface at compile time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", alias_generator=to_camel, populate_by_name=True)


class BaseAdapter(ABC):
    """Base class for all adapters."""

    code: ClassVar[str]
    step_type: ClassVar[StepType]
    name: ClassVar[str]
    category: ClassVar[AdapterCategory] = AdapterCategory.UTILITY
    description: ClassVar[str] = ""
    config_model: ClassVar[type[BaseModel] | None] = None
    config_fields: ClassVar[tuple[ConfigField, ...]] = ()
    pure: ClassVar[bool] = False
    is_async: ClassVar[bool] = False
    batchable: ClassVar[bool] = True
    retryable: ClassVar[bool] = True
    writes: ClassVar[tuple[str, ...]] = ()

    def __init__(self, config: BaseModel) -> None:
        self.config = config

    def typed_config(self, model: type[C]) -> C:
        """Return the config narrowed to the adapter's config variant.

        Raises:
            TypeError: If the engine handed over a different variant
        """
        if not isinstance(self.config, model):
            raise TypeError(f"{type(self).__name__} expected {model.__name__}, got {type(self.config).__name__}")
        return self.config

    @abstractmethod
    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        """Process one chunk of records."""
        ...

    def close(self) -> None:  # noqa: B027 - optional hook, default no-op
        """Release resources held by the adapter."""
