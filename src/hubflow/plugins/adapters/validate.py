# src/hubflow/plugins/adapters/validate.py
"""Validation adapters.

Invalid records are reported as record errors and do not continue
downstream; valid records pass through unchanged.
"""

import re
from typing import Any, Literal

from pydantic import Field, field_validator

from hubflow.contracts.adapter import ConfigField, FieldType, FieldValidation
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.results import AdapterResult, Record, RecordError
from hubflow.engine.routing import MISSING, get_path
from hubflow.plugins.base import AdapterConfig, BaseAdapter
from hubflow.plugins.protocols import AdapterContext


def _is_absent(value: Any, allow_empty_strings: bool) -> bool:
    if value is MISSING or value is None:
        return True
    return not allow_empty_strings and isinstance(value, str) and value.strip() == ""


class RequiredConfig(AdapterConfig):
    fields: list[str] = Field(min_length=1)
    allow_empty_strings: bool = False


class RequiredFields(BaseAdapter):
    """Reject records missing any of the listed fields.

    A record yields at most one error; its ``field`` is the first missing
    field and the message names all of them.
    """

    code = "required-fields"
    step_type = StepType.VALIDATE
    name = "Required fields"
    category = AdapterCategory.VALIDATION
    description = "Fails records that lack required fields."
    config_model = RequiredConfig
    config_fields = (
        ConfigField("fields", FieldType.ARRAY, required=True, validation=FieldValidation(min_length=1)),
        ConfigField("allowEmptyStrings", FieldType.BOOLEAN, default=False),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(RequiredConfig)
        valid: list[Record] = []
        errors: list[RecordError] = []
        for index, record in enumerate(records):
            missing = [f for f in cfg.fields if _is_absent(get_path(record, f), cfg.allow_empty_strings)]
            if missing:
                errors.append(
                    RecordError(
                        index=index,
                        message=f"Missing required field(s): {', '.join(missing)}",
                        code="REQUIRED",
                        field=missing[0],
                        record=record,
                    )
                )
            else:
                valid.append(record)
        return AdapterResult(records=valid, errors=errors, meta={"valid": len(valid), "invalid": len(errors)})


class FieldRule(AdapterConfig):
    """One typed check applied to a single field."""

    field: str
    type: Literal["string", "number", "boolean", "object", "array"] | None = None
    required: bool = False
    min: float | None = None
    max: float | None = None
    pattern: str | None = None
    enum: list[Any] | None = None

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str | None) -> str | None:
        if value is not None:
            re.compile(value)
        return value


class SchemaRulesConfig(AdapterConfig):
    rules: list[FieldRule] = Field(min_length=1)
    schema_code: str | None = None


_TYPE_CHECKS: dict[str, Any] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def _rule_failure(rule: FieldRule, value: Any) -> tuple[str, str] | None:
    """Return (code, message) for the first failed check of ``rule``, or None."""
    if value is MISSING or value is None:
        return ("REQUIRED", f"{rule.field} is required") if rule.required else None
    if rule.type is not None and not _TYPE_CHECKS[rule.type](value):
        return "INVALID_TYPE", f"{rule.field} must be a {rule.type}"
    if isinstance(value, int | float) and not isinstance(value, bool):
        if rule.min is not None and value < rule.min:
            return "TOO_SMALL", f"{rule.field} must be >= {rule.min}"
        if rule.max is not None and value > rule.max:
            return "TOO_LARGE", f"{rule.field} must be <= {rule.max}"
    if rule.pattern is not None and re.fullmatch(rule.pattern, str(value)) is None:
        return "INVALID_FORMAT", f"{rule.field} does not match {rule.pattern}"
    if rule.enum is not None and value not in rule.enum:
        return "NOT_IN_ENUM", f"{rule.field} must be one of {rule.enum}"
    return None


class SchemaRules(BaseAdapter):
    """Validate records against per-field rules.

    Each record yields at most one error, for the first rule it breaks.
    """

    code = "schema-rules"
    step_type = StepType.VALIDATE
    name = "Schema rules"
    category = AdapterCategory.VALIDATION
    description = "Checks field types, ranges, patterns and allowed values."
    config_model = SchemaRulesConfig
    config_fields = (
        ConfigField("rules", FieldType.ARRAY, required=True, validation=FieldValidation(min_length=1)),
        ConfigField("schemaCode", FieldType.STRING),
    )
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(SchemaRulesConfig)
        valid: list[Record] = []
        errors: list[RecordError] = []
        for index, record in enumerate(records):
            failure = None
            for rule in cfg.rules:
                failure = _rule_failure(rule, get_path(record, rule.field))
                if failure is not None:
                    code, message = failure
                    errors.append(RecordError(index=index, message=message, code=code, field=rule.field, record=record))
                    break
            if failure is None:
                valid.append(record)
        return AdapterResult(records=valid, errors=errors, meta={"valid": len(valid), "invalid": len(errors)})
