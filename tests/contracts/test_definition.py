# tests/contracts/test_definition.py
"""Tests for pipeline definition models."""

import pytest
from pydantic import ValidationError

from hubflow.contracts.definition import (
    HookAction,
    PipelineDefinition,
    PipelineEdge,
    PipelineStepDefinition,
    RouteConfig,
    WebhookTrigger,
)
from hubflow.contracts.enums import DrainStrategy, HmacAlgorithm, HookStage, ShedPolicy, StepType, WebhookAuth


class TestPipelineStepDefinition:
    """Step nodes accept wire names and snake_case attribute names."""

    def test_wire_names(self) -> None:
        node = PipelineStepDefinition.model_validate(
            {
                "key": "load",
                "type": "LOAD",
                "adapterCode": "memory-load",
                "continueOnError": True,
                "retryDelayMs": 50,
                "timeoutMs": 1000,
                "async": True,
                "throughput": {"rateLimitRps": 5, "batchSize": 10, "pauseOnErrorRate": {"threshold": 0.5, "intervalSec": 2}},
            }
        )

        assert node.type == StepType.LOAD
        assert node.adapter_code == "memory-load"
        assert node.continue_on_error is True
        assert node.async_ is True
        assert node.throughput is not None
        assert node.throughput.batch_size == 10
        assert node.throughput.pause_on_error_rate is not None
        assert node.throughput.pause_on_error_rate.interval_sec == 2
        assert node.throughput.drain_strategy == DrainStrategy.BACKOFF
        assert node.throughput.shed_policy == ShedPolicy.FINISH

    def test_label_falls_back_to_key(self) -> None:
        assert PipelineStepDefinition(key="a", type=StepType.EXTRACT).label == "a"
        assert PipelineStepDefinition(key="a", type=StepType.EXTRACT, name="Source").label == "Source"

    def test_unknown_step_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PipelineStepDefinition.model_validate({"key": "a", "type": "TELEPORT"})

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PipelineStepDefinition.model_validate({"key": "a", "type": "LOAD", "retries": -1})

    def test_threshold_must_be_a_fraction(self) -> None:
        with pytest.raises(ValidationError):
            PipelineStepDefinition.model_validate(
                {"key": "a", "type": "LOAD", "throughput": {"pauseOnErrorRate": {"threshold": 1.5, "intervalSec": 1}}}
            )

    def test_frozen(self) -> None:
        node = PipelineStepDefinition(key="a", type=StepType.EXTRACT)
        with pytest.raises(ValidationError):
            node.key = "b"  # type: ignore[misc]


class TestEdgesAndRoutes:
    def test_edge_from_alias(self) -> None:
        e = PipelineEdge.model_validate({"from": "a", "to": "b", "branch": "hot"})
        assert e.from_ == "a"
        assert e.to_wire() == {"from": "a", "to": "b", "branch": "hot"}

    def test_duplicate_branch_names_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate branch name"):
            RouteConfig.model_validate({"branches": [{"name": "a"}, {"name": "a"}]})

    def test_branch_names_include_default(self) -> None:
        route = RouteConfig.model_validate({"branches": [{"name": "a"}], "defaultBranch": "rest"})
        assert route.branch_names == frozenset({"a", "rest"})


class TestPipelineDefinition:
    def test_implicit_edges_from_inputs_and_outputs(self) -> None:
        definition = PipelineDefinition.model_validate(
            {
                "nodes": [
                    {"key": "a", "type": "EXTRACT", "outputs": ["b"]},
                    {"key": "b", "type": "TRANSFORM"},
                    {"key": "c", "type": "SINK", "inputs": ["b"]},
                ],
                "edges": [{"from": "a", "to": "b", "label": "explicit"}],
            }
        )

        pairs = [(e.from_, e.to) for e in definition.all_edges()]

        assert pairs == [("a", "b"), ("b", "c")]
        assert definition.all_edges()[0].label == "explicit"

    def test_get_step(self) -> None:
        definition = PipelineDefinition.model_validate({"nodes": [{"key": "a", "type": "EXTRACT"}]})
        assert definition.get_step("a").key == "a"
        with pytest.raises(KeyError):
            definition.get_step("missing")

    def test_hooks_keyed_by_stage(self) -> None:
        definition = PipelineDefinition.model_validate(
            {"hooks": {"PIPELINE_STARTED": [{"type": "LOG", "message": "go"}], "ON_ERROR": [{"type": "EMIT", "event": "alert"}]}}
        )
        assert set(definition.hooks) == {HookStage.PIPELINE_STARTED, HookStage.ON_ERROR}

    def test_emit_action_requires_event(self) -> None:
        with pytest.raises(ValidationError, match="EMIT hook actions require an event name"):
            HookAction.model_validate({"type": "EMIT"})

    def test_triggers_discriminated_by_type(self) -> None:
        definition = PipelineDefinition.model_validate(
            {
                "triggers": [
                    {"type": "manual"},
                    {"type": "schedule", "cron": "0 * * * *"},
                    {"type": "webhook", "key": "hook", "authentication": "HMAC", "secretCode": "s", "hmacAlgorithm": "sha512"},
                    {"type": "webhook", "key": "off", "enabled": False},
                ]
            }
        )

        webhooks = definition.webhook_triggers()

        assert len(webhooks) == 1
        assert webhooks[0].authentication == WebhookAuth.HMAC
        assert webhooks[0].hmac_algorithm == HmacAlgorithm.SHA512
        assert webhooks[0].hmac_header_name == "x-datahub-signature"

    def test_webhook_defaults(self) -> None:
        trigger = WebhookTrigger()
        assert trigger.authentication == WebhookAuth.NONE
        assert trigger.api_key_header_name == "x-api-key"
        assert trigger.jwt_header_name == "authorization"
        assert trigger.require_idempotency_key is False
