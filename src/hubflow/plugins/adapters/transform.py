# src/hubflow/plugins/adapters/transform.py
"""Record-shaping adapters: field mapping, formulas, filtering and enrichment."""

from __future__ import annotations

import copy
from typing import Any

from pydantic import Field, field_validator

from hubflow.contracts.adapter import ConfigField, FieldType
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.results import AdapterResult, Record, RecordError
from hubflow.engine.expression_parser import ExpressionEvaluationError, parse_expression
from hubflow.engine.routing import MISSING, get_path
from hubflow.plugins.base import AdapterConfig, BaseAdapter
from hubflow.plugins.config_schema import ensure_expression
from hubflow.plugins.protocols import AdapterContext


def set_path(record: dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at a dot-separated path, creating intermediate objects."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def delete_path(record: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = record
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        current = current[part]
    if isinstance(current, dict):
        current.pop(parts[-1], None)


# === Field mapping ===


class MapConfig(AdapterConfig):
    mapping: dict[str, str] = Field(min_length=1)
    select_only: bool = False
    strict: bool = False


class FieldMap(BaseAdapter):
    """Rename and select record fields.

    Config options:
        mapping: Dict of source_field -> target_field
            - Simple: {"qty": "quantity"} renames qty to quantity
            - Nested: {"meta.source": "origin"} extracts a nested field
        selectOnly: If True, only mapped fields appear in the output
        strict: If True, a missing source field is a record error
    """

    code = "map"
    step_type = StepType.TRANSFORM
    name = "Field mapping"
    category = AdapterCategory.TRANSFORMATION
    description = "Renames, moves and selects fields."
    config_model = MapConfig
    config_fields = (
        ConfigField("mapping", FieldType.OBJECT, required=True, label="Mapping"),
        ConfigField("selectOnly", FieldType.BOOLEAN, default=False),
        ConfigField("strict", FieldType.BOOLEAN, default=False),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(MapConfig)
        output: list[Record] = []
        errors: list[RecordError] = []
        for index, record in enumerate(records):
            mapped: dict[str, Any] = {} if cfg.select_only else copy.deepcopy(record)
            missing = None
            for source, target in cfg.mapping.items():
                value = get_path(record, source)
                if value is MISSING:
                    if cfg.strict:
                        missing = source
                        break
                    continue
                if not cfg.select_only:
                    delete_path(mapped, source)
                set_path(mapped, target, value)
            if missing is not None:
                errors.append(
                    RecordError(index=index, message=f"Field '{missing}' not found", code="MISSING_FIELD", field=missing, record=record)
                )
                continue
            output.append(mapped)
        return AdapterResult(records=output, errors=errors)


# === Formulas ===


class FormulaConfig(AdapterConfig):
    """``assignments`` maps target field -> expression, applied in order."""

    assignments: dict[str, str] = Field(min_length=1)

    @field_validator("assignments")
    @classmethod
    def _check_expressions(cls, value: dict[str, str]) -> dict[str, str]:
        for expression in value.values():
            ensure_expression(expression)
        return value


def _apply_assignments(
    record: Record, assignments: dict[str, str], variables: dict[str, Any], index: int
) -> tuple[Record | None, RecordError | None]:
    result = copy.deepcopy(record)
    for target, expression in assignments.items():
        try:
            # Later assignments see earlier results
            value = parse_expression(expression).evaluate(result, variables)
        except ExpressionEvaluationError as e:
            return None, RecordError(
                index=index, message=f"{target}: {e}", code="EXPRESSION_ERROR", field=target, record=record
            )
        set_path(result, target, value)
    return result, None


class Formula(BaseAdapter):
    """Compute fields from expressions.

    Example config:
        assignments:
          total: "price * quantity"
          sku: "upper(sku)"
    """

    code = "formula"
    step_type = StepType.TRANSFORM
    name = "Formula"
    category = AdapterCategory.TRANSFORMATION
    description = "Sets fields from expressions over the record and pipeline variables."
    config_model = FormulaConfig
    config_fields = (ConfigField("assignments", FieldType.OBJECT, required=True, label="Assignments"),)
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(FormulaConfig)
        variables = dict(ctx.variables)
        output: list[Record] = []
        errors: list[RecordError] = []
        for index, record in enumerate(records):
            result, error = _apply_assignments(record, cfg.assignments, variables, index)
            if error is not None:
                errors.append(error)
            elif result is not None:
                output.append(result)
        return AdapterResult(records=output, errors=errors)


# === Filtering ===


class FilterConfig(AdapterConfig):
    expression: str
    keep: bool = True

    @field_validator("expression")
    @classmethod
    def _check_expression(cls, value: str) -> str:
        return ensure_expression(value)


class Filter(BaseAdapter):
    """Keep (or discard) records for which an expression is truthy.

    Records filtered out are counted as dropped, not as errors.
    """

    code = "filter"
    step_type = StepType.TRANSFORM
    name = "Filter"
    category = AdapterCategory.FILTERING
    description = "Drops records by expression."
    config_model = FilterConfig
    config_fields = (
        ConfigField("expression", FieldType.EXPRESSION, required=True, label="Expression"),
        ConfigField("keep", FieldType.BOOLEAN, default=True, description="Keep matching records (false discards them)"),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(FilterConfig)
        parser = parse_expression(cfg.expression)
        variables = dict(ctx.variables)
        kept: list[Record] = []
        errors: list[RecordError] = []
        dropped = 0
        for index, record in enumerate(records):
            try:
                matched = bool(parser.evaluate(record, variables))
            except ExpressionEvaluationError as e:
                errors.append(RecordError(index=index, message=str(e), code="EXPRESSION_ERROR", record=record))
                continue
            if matched == cfg.keep:
                kept.append(record)
            else:
                dropped += 1
        return AdapterResult(records=kept, errors=errors, dropped=dropped)


# === Enrichment ===


class EnrichConfig(AdapterConfig):
    defaults: dict[str, Any] = Field(default_factory=dict)
    computed: dict[str, str] = Field(default_factory=dict)
    overwrite: bool = False

    @field_validator("computed")
    @classmethod
    def _check_expressions(cls, value: dict[str, str]) -> dict[str, str]:
        for expression in value.values():
            ensure_expression(expression)
        return value


class Enrich(BaseAdapter):
    """Fill default values, then add computed fields.

    Defaults only apply to fields that are missing or null unless
    ``overwrite`` is set.
    """

    code = "enrich"
    step_type = StepType.ENRICH
    name = "Enrich"
    category = AdapterCategory.ENRICHMENT
    description = "Adds default and computed fields."
    config_model = EnrichConfig
    config_fields = (
        ConfigField("defaults", FieldType.OBJECT, label="Defaults"),
        ConfigField("computed", FieldType.OBJECT, label="Computed fields"),
        ConfigField("overwrite", FieldType.BOOLEAN, default=False),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(EnrichConfig)
        variables = dict(ctx.variables)
        output: list[Record] = []
        errors: list[RecordError] = []
        enriched_fields = sorted({*cfg.defaults, *cfg.computed})
        for index, record in enumerate(records):
            result = copy.deepcopy(record)
            for field, default in cfg.defaults.items():
                current = get_path(result, field)
                if cfg.overwrite or current is MISSING or current is None:
                    set_path(result, field, copy.deepcopy(default))
            computed, error = _apply_assignments(result, cfg.computed, variables, index)
            if error is not None:
                errors.append(error)
            elif computed is not None:
                output.append(computed)
        return AdapterResult(records=output, errors=errors, meta={"enrichedFields": enriched_fields})
