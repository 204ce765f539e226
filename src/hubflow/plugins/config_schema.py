# src/hubflow/plugins/config_schema.py
"""Validation of step configs against an adapter's declared schema.

Two layers are checked:

1. The declared ConfigField list (required, type, constraints, dependsOn).
   This is what an editor renders and what produces field-level issues.
2. The adapter's typed config model, when it has one. Its pydantic errors
   are mapped onto the same issue codes.

build_config() returns the typed config instance the adapter receives at
execution time; adapters without a model get a GenericAdapterConfig.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ValidationError

from hubflow.contracts.adapter import AdapterDefinition, ConfigField, FieldType, GenericAdapterConfig
from hubflow.contracts.errors import IssueCode, ValidationIssue
from hubflow.engine.expression_parser import check_expression


class InvalidExpressionValue(ValueError):
    """Raised by typed config validators for a malformed expression."""


def ensure_expression(value: str) -> str:
    """Pydantic validator body: reject expressions that do not parse."""
    problem = check_expression(value)
    if problem is not None:
        raise InvalidExpressionValue(problem)
    return value


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _type_ok(field: ConfigField, value: Any) -> bool:
    match field.type:
        case FieldType.STRING | FieldType.SELECT | FieldType.EXPRESSION:
            return isinstance(value, str)
        case FieldType.NUMBER:
            return isinstance(value, int | float) and not isinstance(value, bool)
        case FieldType.BOOLEAN:
            return isinstance(value, bool)
        case FieldType.OBJECT:
            return isinstance(value, dict)
        case FieldType.ARRAY:
            return isinstance(value, list)
        case FieldType.JSON:
            return True
    return False


def _dependency_met(field: ConfigField, config: dict[str, Any]) -> bool:
    if field.depends_on is None:
        return True
    return config.get(field.depends_on.field) == field.depends_on.value


def _check_field(field: ConfigField, value: Any, step_key: str | None) -> list[ValidationIssue]:
    def issue(code: IssueCode, message: str) -> ValidationIssue:
        return ValidationIssue(code=code, message=message, step_key=step_key, field=field.key)

    if not _type_ok(field, value):
        return [issue(IssueCode.INVALID_TYPE, f"'{field.key}' must be of type {field.type.value}")]

    issues: list[ValidationIssue] = []
    rules = field.validation
    if rules is not None:
        if isinstance(value, int | float) and not isinstance(value, bool):
            if rules.min is not None and value < rules.min:
                issues.append(issue(IssueCode.TOO_SMALL, f"'{field.key}' must be >= {rules.min}"))
            if rules.max is not None and value > rules.max:
                issues.append(issue(IssueCode.TOO_LARGE, f"'{field.key}' must be <= {rules.max}"))
        if isinstance(value, str | list):
            if rules.min_length is not None and len(value) < rules.min_length:
                issues.append(issue(IssueCode.TOO_SHORT, f"'{field.key}' must have length >= {rules.min_length}"))
            if rules.max_length is not None and len(value) > rules.max_length:
                issues.append(issue(IssueCode.TOO_LONG, f"'{field.key}' must have length <= {rules.max_length}"))
        if rules.pattern is not None and isinstance(value, str) and re.fullmatch(rules.pattern, value) is None:
            issues.append(issue(IssueCode.INVALID_FORMAT, f"'{field.key}' does not match pattern {rules.pattern}"))
        if rules.enum is not None and value not in rules.enum:
            issues.append(issue(IssueCode.NOT_IN_ENUM, f"'{field.key}' must be one of {list(rules.enum)}"))

    if field.type == FieldType.EXPRESSION:
        problem = check_expression(value)
        if problem is not None:
            issues.append(issue(IssueCode.INVALID_EXPRESSION, f"'{field.key}': {problem}"))
    return issues


def validate_config(definition: AdapterDefinition, config: dict[str, Any], step_key: str | None = None) -> list[ValidationIssue]:
    """Check a step config against the adapter's declared fields.

    Fields whose dependsOn condition does not hold are ignored entirely.
    """
    issues: list[ValidationIssue] = []
    for field in definition.fields:
        if not _dependency_met(field, config):
            continue
        value = config.get(field.key)
        if _is_blank(value):
            if field.required and field.default is None:
                issues.append(
                    ValidationIssue(
                        code=IssueCode.REQUIRED,
                        message=f"'{field.key}' is required by adapter '{definition.code}'",
                        step_key=step_key,
                        field=field.key,
                    )
                )
            continue
        issues.extend(_check_field(field, value, step_key))
    return issues


def _issues_from_pydantic(exc: ValidationError, step_key: str | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err["loc"]) or None
        kind = err["type"]
        if kind == "missing":
            code = IssueCode.REQUIRED
        elif kind == "value_error" and isinstance(err.get("ctx", {}).get("error"), InvalidExpressionValue):
            code = IssueCode.INVALID_EXPRESSION
        elif kind.endswith("_type") or kind.endswith("_parsing"):
            code = IssueCode.INVALID_TYPE
        elif kind in ("greater_than", "greater_than_equal"):
            code = IssueCode.TOO_SMALL
        elif kind in ("less_than", "less_than_equal"):
            code = IssueCode.TOO_LARGE
        elif kind == "too_short":
            code = IssueCode.TOO_SHORT
        elif kind == "too_long":
            code = IssueCode.TOO_LONG
        elif kind in ("enum", "literal_error"):
            code = IssueCode.NOT_IN_ENUM
        else:
            code = IssueCode.INVALID_FORMAT
        issues.append(ValidationIssue(code=code, message=err["msg"], step_key=step_key, field=path))
    return issues


def build_config(
    definition: AdapterDefinition, config: dict[str, Any], step_key: str | None = None
) -> tuple[BaseModel | None, list[ValidationIssue]]:
    """Validate ``config`` and build the typed config instance.

    Declared defaults are filled in before the typed model sees the config.

    Returns:
        (config instance or None when invalid, issues found)
    """
    issues = validate_config(definition, config, step_key)
    merged = {f.key: f.default for f in definition.fields if f.default is not None and f.key not in config}
    merged.update(config)

    model = getattr(definition.adapter_cls, "config_model", None) if definition.adapter_cls is not None else None
    try:
        instance = (model or GenericAdapterConfig).model_validate(merged)
    except ValidationError as e:
        known = {(i.field, i.code) for i in issues}
        issues.extend(i for i in _issues_from_pydantic(e, step_key) if (i.field, i.code) not in known)
        return None, issues
    return (None if issues else instance), issues
