# tests/plugins/test_config_schema.py
"""Tests for step config validation against declared fields and typed models."""

from __future__ import annotations

from typing import Any

import pytest

from hubflow.contracts.adapter import (
    AdapterDefinition,
    ConfigField,
    FieldDependency,
    FieldType,
    FieldValidation,
    GenericAdapterConfig,
)
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.errors import IssueCode
from hubflow.plugins.adapters.transform import FilterConfig, MapConfig
from hubflow.plugins.config_schema import build_config, validate_config
from hubflow.plugins.manager import AdapterRegistry
from tests.fixtures.adapters import TestAdapters

REGISTRY = AdapterRegistry.with_builtins()

DECLARED = AdapterDefinition(
    code="http-load",
    type=StepType.LOAD,
    name="HTTP load",
    category=AdapterCategory.DESTINATION,
    fields=(
        ConfigField("url", FieldType.STRING, required=True, validation=FieldValidation(pattern=r"https?://.+")),
        ConfigField("batch", FieldType.NUMBER, validation=FieldValidation(min=1, max=500)),
        ConfigField("method", FieldType.SELECT, validation=FieldValidation(enum=("POST", "PUT"))),
        ConfigField("name", FieldType.STRING, validation=FieldValidation(min_length=2, max_length=5)),
        ConfigField("auth", FieldType.SELECT, default="none"),
        ConfigField("token", FieldType.STRING, required=True, depends_on=FieldDependency("auth", "bearer")),
        ConfigField("where", FieldType.EXPRESSION),
        ConfigField("headers", FieldType.OBJECT),
    ),
)


def _codes(config: dict[str, Any]) -> dict[str | None, IssueCode]:
    return {i.field: i.code for i in validate_config(DECLARED, config, step_key="load")}


class TestDeclaredFields:
    def test_valid(self) -> None:
        assert validate_config(DECLARED, {"url": "https://example.test", "batch": 10, "method": "PUT"}) == []

    @pytest.mark.parametrize(
        ("config", "field", "code"),
        [
            ({}, "url", IssueCode.REQUIRED),
            ({"url": "   "}, "url", IssueCode.REQUIRED),
            ({"url": "ftp://x"}, "url", IssueCode.INVALID_FORMAT),
            ({"url": "http://x", "batch": 0}, "batch", IssueCode.TOO_SMALL),
            ({"url": "http://x", "batch": 501}, "batch", IssueCode.TOO_LARGE),
            ({"url": "http://x", "batch": True}, "batch", IssueCode.INVALID_TYPE),
            ({"url": "http://x", "method": "GET"}, "method", IssueCode.NOT_IN_ENUM),
            ({"url": "http://x", "name": "a"}, "name", IssueCode.TOO_SHORT),
            ({"url": "http://x", "name": "abcdef"}, "name", IssueCode.TOO_LONG),
            ({"url": "http://x", "where": "amount >"}, "where", IssueCode.INVALID_EXPRESSION),
            ({"url": "http://x", "headers": ["a"]}, "headers", IssueCode.INVALID_TYPE),
        ],
    )
    def test_issue(self, config: dict[str, Any], field: str, code: IssueCode) -> None:
        assert _codes(config) == {field: code}

    def test_issues_carry_step_key(self) -> None:
        [issue] = validate_config(DECLARED, {}, step_key="load")
        assert issue.step_key == "load"
        assert issue.message == "'url' is required by adapter 'http-load'"

    def test_dependent_field_only_checked_when_active(self) -> None:
        assert _codes({"url": "http://x", "auth": "none"}) == {}
        assert _codes({"url": "http://x", "auth": "bearer"}) == {"token": IssueCode.REQUIRED}


class TestBuildConfig:
    def test_typed_instance_with_defaults(self) -> None:
        instance, issues = build_config(REGISTRY.require("filter"), {"expression": "amount > 1"})

        assert issues == []
        assert isinstance(instance, FilterConfig)
        assert instance.keep is True

    def test_camel_case_keys(self) -> None:
        instance, _ = build_config(REGISTRY.require("map"), {"mapping": {"a": "b"}, "selectOnly": True})

        assert isinstance(instance, MapConfig)
        assert instance.select_only is True

    def test_required_fields_reported_once(self) -> None:
        instance, issues = build_config(REGISTRY.require("memory-load"), {}, step_key="load")

        assert instance is None
        assert sorted((i.field, i.code) for i in issues) == [
            ("collection", IssueCode.REQUIRED),
            ("keyField", IssueCode.REQUIRED),
        ]

    def test_invalid_expression_reported_once(self) -> None:
        instance, issues = build_config(REGISTRY.require("filter"), {"expression": "price >"})

        assert instance is None
        assert [(i.field, i.code) for i in issues] == [("expression", IssueCode.INVALID_EXPRESSION)]

    def test_declared_and_model_constraints_agree(self) -> None:
        _, issues = build_config(REGISTRY.require("required-fields"), {"fields": []})
        assert [(i.field, i.code) for i in issues] == [("fields", IssueCode.TOO_SHORT)]

        _, issues = build_config(REGISTRY.require("map"), {"mapping": "qty"})
        assert [(i.field, i.code) for i in issues] == [("mapping", IssueCode.INVALID_TYPE)]

    def test_unknown_keys_rejected_by_typed_models(self) -> None:
        instance, issues = build_config(REGISTRY.require("map"), {"mapping": {"a": "b"}, "selctOnly": True})

        assert instance is None
        assert [i.field for i in issues] == ["selctOnly"]

    def test_model_only_validation(self) -> None:
        # "when" conditions are not declared fields; only RouteConfig checks them
        _, issues = build_config(REGISTRY.require("route"), {"branches": [{"name": "a", "when": [{"field": "x", "cmp": "near"}]}]})

        assert [i.code for i in issues] == [IssueCode.NOT_IN_ENUM]
        assert issues[0].field == "branches.0.when.0.cmp"

    def test_adapters_without_model_get_generic_config(self) -> None:
        registry = AdapterRegistry.with_builtins(TestAdapters())
        instance, issues = build_config(registry.require("test-flaky-load"), {"failures": 2})

        assert issues == []
        assert isinstance(instance, GenericAdapterConfig)
        assert getattr(instance, "failures") == 2
