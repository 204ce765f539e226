# src/hubflow/contracts/adapter.py
"""Adapter metadata: registration records and declared config schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from hubflow.contracts.enums import AdapterCategory, StepType

if TYPE_CHECKING:
    from hubflow.plugins.protocols import AdapterProtocol


class FieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    EXPRESSION = "expression"
    OBJECT = "object"
    ARRAY = "array"
    JSON = "json"


@dataclass(frozen=True, slots=True)
class FieldValidation:
    """Constraints applied to a config field value.

    ``min``/``max`` bound numbers, ``min_length``/``max_length`` bound strings
    and arrays, ``pattern`` is a regex that strings must match in full.
    """

    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    enum: tuple[Any, ...] | None = None


@dataclass(frozen=True, slots=True)
class FieldDependency:
    """Field is only considered when another field holds a given value."""

    field: str
    value: Any


@dataclass(frozen=True, slots=True)
class ConfigField:
    key: str
    type: FieldType
    required: bool = False
    label: str | None = None
    description: str | None = None
    default: Any = None
    validation: FieldValidation | None = None
    depends_on: FieldDependency | None = None


class GenericAdapterConfig(BaseModel):
    """Fallback config variant for adapters without a typed config model.

    Keeps every key; only the declared ConfigField schema constrains it.
    """

    model_config = ConfigDict(frozen=True, extra="allow")


@dataclass(frozen=True)
class AdapterDefinition:
    """Registration record for an adapter.

    Frozen: the registry is immutable once built, so are its entries.

    Attributes:
        code: Unique adapter code referenced by steps (``adapterCode``)
        type: Step type the adapter serves
        category: Palette grouping
        fields: Declared config schema
        pure: No side effects; safe to invoke during dry runs
        is_async: Adapter prefers concurrent chunk execution
        batchable: Adapter accepts multi-record chunks
        retryable: Transient failures may be retried
        writes: Permission domains the adapter writes to
    """

    code: str
    type: StepType
    name: str
    category: AdapterCategory
    description: str = ""
    fields: tuple[ConfigField, ...] = ()
    pure: bool = False
    is_async: bool = False
    batchable: bool = True
    retryable: bool = True
    writes: tuple[str, ...] = ()
    adapter_cls: type[AdapterProtocol] | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_adapter(cls, adapter_cls: type[AdapterProtocol]) -> AdapterDefinition:
        """Create a definition from an adapter class's declared attributes."""
        return cls(
            code=adapter_cls.code,
            type=adapter_cls.step_type,
            name=adapter_cls.name,
            category=adapter_cls.category,
            description=adapter_cls.description,
            fields=tuple(adapter_cls.config_fields),
            pure=adapter_cls.pure,
            is_async=adapter_cls.is_async,
            batchable=adapter_cls.batchable,
            retryable=adapter_cls.retryable,
            writes=tuple(adapter_cls.writes),
            adapter_cls=adapter_cls,
        )

    def field_by_key(self, key: str) -> ConfigField | None:
        for f in self.fields:
            if f.key == key:
                return f
        return None
