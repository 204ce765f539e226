# tests/engine/test_step_executor.py
"""Tests for StepExecutor: chunking, retries, error capture and hook payloads."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from hubflow.contracts.definition import ErrorHandlingConfig
from hubflow.contracts.enums import DeadLetterStatus, ErrorStage, HookStage, StepStatus
from hubflow.contracts.results import StepResult
from hubflow.core.dead_letter import DeadLetterStore
from hubflow.engine.cancellation import CancellationToken
from hubflow.engine.compiler import PipelineCompiler
from hubflow.engine.executors import StepExecutor, StepRunContext
from hubflow.engine.hooks import HookDispatcher
from hubflow.plugins.adapters.sink import MEMORY_SINKS_RESOURCE, MemorySinkStore
from tests.fixtures.adapters import AuthFailLoad, ConcurrencyGauge, RecordingListener
from tests.fixtures.pipelines import chain, definition, extract, step

RunStep = Callable[..., StepResult]


@pytest.fixture
def sinks() -> MemorySinkStore:
    return MemorySinkStore()


@pytest.fixture
def run_step(
    compiler: PipelineCompiler,
    executor: StepExecutor,
    hooks: HookDispatcher,
    dead_letters: DeadLetterStore,
    sinks: MemorySinkStore,
) -> RunStep:
    """Compile ``extract -> node`` and execute ``node`` over ``records``."""

    def _run(node: dict[str, Any], records: list[dict[str, Any]], **ctx: Any) -> StepResult:
        plan = compiler.compile(definition([extract(), node], chain("extract", node["key"])))
        context = StepRunContext(
            run_id="run_test",
            pipeline_id="orders",
            hooks=hooks,
            dead_letters=dead_letters,
            resources={MEMORY_SINKS_RESOURCE: sinks},
            **ctx,
        )
        return executor.execute(plan.step(node["key"]), records, context)

    return _run


class TestRecordErrors:
    def test_transform_output(self, run_step: RunStep) -> None:
        result = run_step(step("t", "TRANSFORM", "map", {"mapping": {"qty": "quantity"}}), [{"qty": 1}, {"qty": 2}])

        assert result.status == StepStatus.SUCCESS
        assert result.output == [{"quantity": 1}, {"quantity": 2}]
        assert result.meta["throughput"]["admitted_records"] == 2

    def test_first_error_halts_when_not_continuing(self, run_step: RunStep) -> None:
        node = step("v", "VALIDATE", "required-fields", {"fields": ["quantity"]}, throughput={"batchSize": 1})

        result = run_step(node, [{"quantity": 1}, {}, {"quantity": 2}])

        assert result.status == StepStatus.ERROR
        assert result.output_count == 1
        assert result.error_count == 1
        assert result.errors[0].code == "REQUIRED"
        assert result.errors[0].record_index == 1
        assert result.failure is not None
        assert "stopped after 1 record error(s)" in result.failure.message

    def test_continue_on_error_dead_letters(
        self, run_step: RunStep, dead_letters: DeadLetterStore, listener: RecordingListener
    ) -> None:
        node = step("v", "VALIDATE", "required-fields", {"fields": ["quantity"]}, continueOnError=True)

        result = run_step(node, [{"quantity": 1}, {"name": "x"}, {"quantity": 3}])

        assert result.status == StepStatus.SUCCESS
        assert result.output_count == 2
        assert result.error_count == 1

        [entry] = dead_letters.list_entries()
        assert entry.payload == {"name": "x"}
        assert entry.code == "REQUIRED"
        assert entry.stage == ErrorStage.VALIDATION
        assert entry.status == DeadLetterStatus.DEAD_LETTER

        [on_error] = listener.payloads("ON_ERROR")
        assert on_error["recordIndex"] == 1
        [dead] = listener.payloads("ON_DEAD_LETTER")
        assert dead["errorId"] == entry.error_id
        assert listener.payloads("AFTER_VALIDATE")[0]["valid"] == 2
        assert listener.payloads("AFTER_VALIDATE")[0]["invalid"] == 1

    def test_dead_letter_queue_disabled(self, run_step: RunStep, dead_letters: DeadLetterStore, listener: RecordingListener) -> None:
        node = step("v", "VALIDATE", "required-fields", {"fields": ["quantity"]}, continueOnError=True)

        run_step(node, [{}], error_handling=ErrorHandlingConfig(dead_letter_queue=False))

        assert dead_letters.list_entries() == []
        assert len(listener.payloads("ON_ERROR")) == 1
        assert listener.payloads("ON_DEAD_LETTER") == []

    def test_filter_drops_and_errors(self, run_step: RunStep) -> None:
        node = step("f", "TRANSFORM", "filter", {"expression": "price > 10"}, continueOnError=True)

        result = run_step(node, [{"price": 20}, {"price": 5}, {}, {"price": 30}])

        assert result.output == [{"price": 20}, {"price": 30}]
        assert result.dropped_count == 1
        assert result.error_count == 1
        assert "Field 'price' not found" in result.errors[0].message


class TestStepRetry:
    def test_transient_failures_retried(self, run_step: RunStep, listener: RecordingListener) -> None:
        node = step("load", "LOAD", "test-flaky-load", {"failures": 2}, retries=2, retryDelayMs=0)

        result = run_step(node, [{"id": 1}])

        assert result.status == StepStatus.SUCCESS
        assert result.output == [{"id": 1}]
        assert [p["attempt"] for p in listener.payloads("ON_RETRY")] == [2, 3]
        assert listener.payloads("ON_RETRY")[0]["maxAttempts"] == 3

    def test_retries_exhausted(self, run_step: RunStep, dead_letters: DeadLetterStore) -> None:
        node = step("load", "LOAD", "test-flaky-load", {"failures": 5}, retries=1, retryDelayMs=0)

        result = run_step(node, [{"id": 1}, {"id": 2}])

        assert result.status == StepStatus.ERROR
        assert result.failure is not None
        assert result.failure.stage == ErrorStage.CONNECTION
        assert result.failure.details["attempts"] == 2
        assert result.error_count == 2
        assert {e.stage for e in dead_letters.list_entries()} == {ErrorStage.CONNECTION}

    def test_authentication_failure_not_retried(self, run_step: RunStep) -> None:
        AuthFailLoad.calls = 0
        node = step("load", "LOAD", "test-auth-fail-load", retries=3, retryDelayMs=0)

        result = run_step(node, [{"id": 1}])

        assert AuthFailLoad.calls == 1
        assert result.status == StepStatus.ERROR
        assert result.failure is not None
        assert result.failure.stage == ErrorStage.AUTHENTICATION

    def test_failed_chunk_with_continue_on_error(self, run_step: RunStep) -> None:
        node = step(
            "load", "LOAD", "test-flaky-load", {"failures": 1}, continueOnError=True, throughput={"batchSize": 2}
        )

        result = run_step(node, [{"id": 1}, {"id": 2}, {"id": 3}, {"id": 4}])

        assert result.status == StepStatus.SUCCESS
        assert result.output == [{"id": 3}, {"id": 4}]
        assert result.error_count == 2
        assert [e.record_index for e in result.errors] == [0, 1]

    def test_timeout(self, run_step: RunStep) -> None:
        node = step("slow", "TRANSFORM", "test-slow", {"delayMs": 500}, timeoutMs=50)

        result = run_step(node, [{"id": 1}])

        assert result.status == StepStatus.ERROR
        assert result.failure is not None
        assert result.failure.stage == ErrorStage.TIMEOUT

    def test_adapter_contract_violation(self, run_step: RunStep) -> None:
        result = run_step(step("bad", "TRANSFORM", "test-contract-breaker"), [{"id": 1}])

        assert result.status == StepStatus.ERROR
        assert result.errors[0].code == "ADAPTER_CONTRACT"
        assert "expected AdapterResult" in result.errors[0].message


class TestRecordRetry:
    def test_retriable_records_recover(self, run_step: RunStep, listener: RecordingListener) -> None:
        node = step("t", "TRANSFORM", "test-recovering", {"recoverAfter": 1})

        result = run_step(node, [{"id": 1}, {"id": 2}], error_handling=ErrorHandlingConfig(max_retries=2))

        assert result.status == StepStatus.SUCCESS
        assert result.output == [{"id": 1}, {"id": 2}]
        assert result.meta["recordRetries"] == 1
        assert listener.payloads("ON_RETRY") == [{"stepKey": "t", "attempt": 1, "maxAttempts": 2, "recordCount": 2}]

    def test_retry_budget_exhausted(self, run_step: RunStep, dead_letters: DeadLetterStore, listener: RecordingListener) -> None:
        node = step("t", "TRANSFORM", "test-recovering", {"recoverAfter": 10}, continueOnError=True)

        result = run_step(node, [{"id": 1}], error_handling=ErrorHandlingConfig(max_retries=2))

        assert result.error_count == 1
        assert result.meta["recordRetries"] == 2
        [entry] = dead_letters.list_entries()
        assert entry.retry_count == 2
        assert entry.retryable is True
        assert listener.payloads("ON_DEAD_LETTER")[0]["reason"] == "Max retries exceeded"


class TestSkipAndCancel:
    def test_disabled(self, run_step: RunStep) -> None:
        result = run_step(step("t", "TRANSFORM", "map", {"mapping": {"a": "b"}}, disabled=True), [{"a": 1}])

        assert result.status == StepStatus.SKIPPED
        assert result.meta == {"skipReason": "disabled"}

    def test_false_condition(self, run_step: RunStep, listener: RecordingListener) -> None:
        node = step("t", "TRANSFORM", "map", {"mapping": {"a": "b"}}, condition="vars.get('enabled', False)")

        result = run_step(node, [{"a": 1}], variables={"enabled": False})

        assert result.status == StepStatus.SKIPPED
        assert result.meta["skipReason"] == "condition"
        assert listener.hooks == []

    def test_condition_evaluation_error(self, run_step: RunStep) -> None:
        node = step("t", "TRANSFORM", "map", {"mapping": {"a": "b"}}, condition="vars['missing'] > 1")

        result = run_step(node, [{"a": 1}])

        assert result.status == StepStatus.ERROR
        assert result.failure is not None
        assert result.failure.stage == ErrorStage.CONFIGURATION

    def test_cancelled_before_start(self, run_step: RunStep) -> None:
        token = CancellationToken()
        token.cancel("stop")

        result = run_step(step("t", "TRANSFORM", "map", {"mapping": {"a": "b"}}), [{"a": 1}], cancel=token)

        assert result.status == StepStatus.CANCELLED


class TestLoadSteps:
    def test_upsert_and_after_load_payload(self, run_step: RunStep, sinks: MemorySinkStore, listener: RecordingListener) -> None:
        node = step("load", "LOAD", "memory-load", {"collection": "products", "keyField": "sku"})
        sinks.upsert("products", "a", {"sku": "a", "v": 0})

        result = run_step(node, [{"sku": "a", "v": 1}, {"sku": "b", "v": 1}])

        assert result.meta["created"] == 1
        assert result.meta["updated"] == 1
        assert sorted(r["sku"] for r in sinks.records("products")) == ["a", "b"]
        [after] = listener.payloads("AFTER_LOAD")
        assert (after["created"], after["updated"], after["destination"]) == (1, 1, "memory")
        assert listener.payloads("BEFORE_LOAD")[0]["adapterCode"] == "memory-load"

    def test_idempotency_key_dedupes(self, run_step: RunStep) -> None:
        node = step("load", "LOAD", "memory-load", {"collection": "products", "keyField": "sku"})

        result = run_step(node, [{"sku": "a"}, {"sku": "a"}, {"sku": "b"}], idempotency_key_field="sku")

        assert result.meta["duplicates"] == 1
        assert result.dropped_count == 1
        assert result.output_count == 2

    def test_dry_run_simulates_side_effects(self, run_step: RunStep, sinks: MemorySinkStore, listener: RecordingListener) -> None:
        node = step("load", "LOAD", "memory-load", {"collection": "products", "keyField": "sku"})

        result = run_step(node, [{"sku": "a"}], dry_run=True)

        assert result.status == StepStatus.SUCCESS
        assert result.meta["simulated"] is True
        assert result.output == [{"sku": "a"}]
        assert sinks.names() == []
        assert listener.payloads("BEFORE_LOAD")[0]["dryRun"] is True

    def test_sink_steps_fire_no_hooks(self, run_step: RunStep, sinks: MemorySinkStore, listener: RecordingListener) -> None:
        run_step(step("sink", "SINK", "collect", {"collection": "out"}), [{"id": 1}])

        assert sinks.records("out") == [{"id": 1}]
        assert listener.hooks == []


class TestRoutingAndConcurrency:
    def test_route_branches(self, run_step: RunStep, listener: RecordingListener) -> None:
        node = step(
            "route",
            "ROUTE",
            "route",
            {"branches": [{"name": "big", "when": [{"field": "amount", "cmp": "gte", "value": 100}]}], "defaultBranch": "rest"},
        )

        result = run_step(node, [{"amount": 500}, {"amount": 5}, {"amount": 100}])

        assert result.branches == {"big": [{"amount": 500}, {"amount": 100}], "rest": [{"amount": 5}]}
        assert result.output_count == 3
        assert listener.payloads("AFTER_ROUTE")[0]["destinations"] == {"big": 2, "rest": 1}

    def test_async_adapter_runs_chunks_concurrently(self, run_step: RunStep) -> None:
        ConcurrencyGauge.active = 0
        ConcurrencyGauge.peak = 0
        node = step("gauge", "TRANSFORM", "test-concurrency-gauge", throughput={"batchSize": 1, "concurrency": 3})
        records = [{"i": i} for i in range(6)]

        result = run_step(node, records)

        assert result.status == StepStatus.SUCCESS
        assert [r["i"] for r in result.output] == list(range(6))
        assert all(r["seen"] for r in result.output)
        assert 1 < ConcurrencyGauge.peak <= 3
