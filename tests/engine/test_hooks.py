# tests/engine/test_hooks.py
"""Tests for the hook catalog and HookDispatcher."""

from __future__ import annotations

from hubflow.contracts.definition import HookAction
from hubflow.contracts.enums import HookStage, StepType
from hubflow.engine.hooks import HOOK_CATALOG, STEP_HOOK_STAGES, HookDispatcher, hook_catalog, hooks_by_category
from hubflow.plugins.manager import AdapterPluginManager
from tests.fixtures.adapters import FailingListener, RecordingListener


class TestCatalog:
    def test_every_stage_catalogued_in_order(self) -> None:
        entries = hook_catalog()

        assert [e["stage"] for e in entries] == [stage.value for stage in HookStage]
        assert len(entries) == 18
        assert set(HOOK_CATALOG) == set(HookStage)

    def test_categories(self) -> None:
        grouped = hooks_by_category()

        assert {k: len(v) for k, v in grouped.items()} == {"lifecycle": 3, "data": 12, "error": 3}
        assert [e["stage"] for e in grouped["error"]] == ["ON_ERROR", "ON_RETRY", "ON_DEAD_LETTER"]

    def test_entry_shape(self) -> None:
        entry = HOOK_CATALOG[HookStage.AFTER_LOAD].to_dict()

        assert entry == {
            "stage": "AFTER_LOAD",
            "category": "data",
            "label": "After Load",
            "description": "Fires after records are loaded",
            "examplePayload": {"stepKey": "load", "created": 20, "updated": 25, "errors": 0},
        }

    def test_example_payloads_are_copies(self) -> None:
        hook_catalog()[0]["examplePayload"]["runId"] = "changed"
        assert HOOK_CATALOG[HookStage.PIPELINE_STARTED].example_payload["runId"] == "123"

    def test_sink_steps_have_no_hooks(self) -> None:
        assert StepType.SINK not in STEP_HOOK_STAGES
        assert STEP_HOOK_STAGES[StepType.LOAD] == (HookStage.BEFORE_LOAD, HookStage.AFTER_LOAD)


class TestDispatcher:
    def test_fire_reaches_listener(self, hooks: HookDispatcher, listener: RecordingListener) -> None:
        delivery = hooks.fire(HookStage.BEFORE_LOAD, {"stepKey": "load", "recordCount": 2}, run_id="run_1")

        assert delivery.ok
        assert delivery.delivered == 1
        assert listener.hooks == [("BEFORE_LOAD", {"stepKey": "load", "recordCount": 2}, "run_1")]

    def test_payload_is_snapshotted(self, hooks: HookDispatcher, listener: RecordingListener) -> None:
        payload = {"stepKey": "load", "records": [{"id": 1}]}
        hooks.fire(HookStage.AFTER_LOAD, payload)

        payload["records"].append({"id": 2})

        assert hooks.history[0].payload == {"stepKey": "load", "records": [{"id": 1}]}
        assert listener.payloads("AFTER_LOAD") == [{"stepKey": "load", "records": [{"id": 1}]}]

    def test_failing_listener_is_isolated(self, plugin_manager: AdapterPluginManager, listener: RecordingListener) -> None:
        plugin_manager.register(FailingListener(), name="failing-listener")
        dispatcher = HookDispatcher(plugin_manager.pluggy_manager)

        delivery = dispatcher.fire(HookStage.ON_ERROR, {"error": "boom"})

        assert not delivery.ok
        assert delivery.failures == ["failing-listener: listener exploded"]
        assert delivery.delivered == 1
        assert listener.stages() == ["ON_ERROR"]

    def test_listeners_are_called_through_pluggy(self, plugin_manager: AdapterPluginManager, listener: RecordingListener) -> None:
        plugin_manager.register(FailingListener(), name="failing-listener")
        pm = plugin_manager.pluggy_manager
        calls: list[tuple[str, list[str]]] = []
        undo = pm.add_hookcall_monitoring(
            lambda hook_name, impls, kwargs: calls.append((hook_name, [impl.plugin_name for impl in impls])),
            lambda outcome, hook_name, impls, kwargs: None,
        )
        try:
            delivery = HookDispatcher(pm).fire(HookStage.AFTER_LOAD, {"stepKey": "load"}, run_id="run_1")
        finally:
            undo()

        assert delivery.delivered == 1
        assert sorted(calls) == [("hubflow_on_hook", ["failing-listener"]), ("hubflow_on_hook", ["recording-listener"])]
        assert listener.hooks == [("AFTER_LOAD", {"stepKey": "load"}, "run_1")]

    def test_bound_actions(self, hooks: HookDispatcher, listener: RecordingListener) -> None:
        bound = hooks.bind(
            {
                HookStage.PIPELINE_FAILED: [
                    HookAction.model_validate({"type": "LOG", "level": "error", "message": "run failed"}),
                    HookAction.model_validate({"type": "EMIT", "event": "pager"}),
                ]
            }
        )

        delivery = bound.fire(HookStage.PIPELINE_FAILED, {"error": "timeout"}, run_id="run_9")

        # LOG action, EMIT to the recording listener, then the listener's own hook
        assert delivery.delivered == 3
        assert listener.events == [("pager", {"error": "timeout"}, "run_9")]
        assert hooks.history == []

    def test_events_filter_and_history_bound(self) -> None:
        dispatcher = HookDispatcher(history_size=2)

        dispatcher.fire(HookStage.BEFORE_EXTRACT, {})
        dispatcher.fire(HookStage.AFTER_EXTRACT, {})
        dispatcher.fire(HookStage.BEFORE_EXTRACT, {"n": 2})

        assert len(dispatcher.history) == 2
        assert [e.payload for e in dispatcher.events(HookStage.BEFORE_EXTRACT)] == [{"n": 2}]

    def test_test_hook_uses_example_payload(self, hooks: HookDispatcher, listener: RecordingListener) -> None:
        delivery = hooks.test_hook(HookStage.ON_RETRY)

        assert delivery.ok
        assert listener.hooks == [("ON_RETRY", {"errorId": "456", "attempt": 2, "maxAttempts": 3}, None)]

    def test_test_hook_with_custom_payload(self, hooks: HookDispatcher) -> None:
        hooks.test_hook(HookStage.AFTER_ROUTE, {"stepKey": "r"})
        assert hooks.events(HookStage.AFTER_ROUTE)[0].payload == {"stepKey": "r"}
