# src/hubflow/engine/hooks.py
"""HookDispatcher and the hook stage catalog.

Hook events are delivered to two kinds of receivers:

- pluggy listeners implementing ``hubflow_on_hook`` (registered on the
  AdapterPluginManager), called one at a time so that a failing listener
  is logged and skipped without affecting the others or the run;
- actions declared in the pipeline definition's ``hooks`` map: LOG writes
  a structlog event, EMIT forwards the payload to ``hubflow_on_event``
  listeners under the action's event name.

The catalog is one registry keyed by stage; every stage carries its
category, label, description and an example payload used by test fires.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

import pluggy
import structlog

from hubflow.contracts.definition import HookAction
from hubflow.contracts.enums import HookActionType, HookCategory, HookStage, StepType

slog = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class HookStageInfo:
    stage: HookStage
    category: HookCategory
    label: str
    description: str
    example_payload: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "category": self.category.value,
            "label": self.label,
            "description": self.description,
            "examplePayload": copy.deepcopy(dict(self.example_payload)),
        }


def _info(stage: HookStage, category: HookCategory, label: str, description: str, example: dict[str, Any]) -> HookStageInfo:
    return HookStageInfo(stage, category, label, description, MappingProxyType(example))


_PIPELINE = {"pipelineCode": "my-pipeline", "runId": "123"}

HOOK_CATALOG: Mapping[HookStage, HookStageInfo] = MappingProxyType(
    {
        info.stage: info
        for info in (
            _info(HookStage.PIPELINE_STARTED, HookCategory.LIFECYCLE, "Pipeline Started", "Fires when a pipeline run begins", dict(_PIPELINE)),
            _info(
                HookStage.PIPELINE_COMPLETED,
                HookCategory.LIFECYCLE,
                "Pipeline Completed",
                "Fires when a pipeline run completes successfully",
                {**_PIPELINE, "recordsProcessed": 100, "duration": 5000},
            ),
            _info(
                HookStage.PIPELINE_FAILED,
                HookCategory.LIFECYCLE,
                "Pipeline Failed",
                "Fires when a pipeline run fails or is cancelled",
                {**_PIPELINE, "error": "Connection timeout"},
            ),
            _info(HookStage.BEFORE_EXTRACT, HookCategory.DATA, "Before Extract", "Fires before data extraction", {"stepKey": "extract", "config": {}}),
            _info(
                HookStage.AFTER_EXTRACT,
                HookCategory.DATA,
                "After Extract",
                "Fires after records are extracted",
                {"stepKey": "extract", "recordCount": 50, "records": [{"id": 1}]},
            ),
            _info(HookStage.BEFORE_TRANSFORM, HookCategory.DATA, "Before Transform", "Fires before records are transformed", {"stepKey": "transform", "recordCount": 50}),
            _info(
                HookStage.AFTER_TRANSFORM,
                HookCategory.DATA,
                "After Transform",
                "Fires after records are transformed",
                {"stepKey": "transform", "recordCount": 48, "dropped": 2},
            ),
            _info(
                HookStage.BEFORE_VALIDATE,
                HookCategory.DATA,
                "Before Validate",
                "Fires before records are validated",
                {"stepKey": "validate", "schemaCode": "product-schema"},
            ),
            _info(HookStage.AFTER_VALIDATE, HookCategory.DATA, "After Validate", "Fires after validation", {"stepKey": "validate", "valid": 45, "invalid": 3}),
            _info(HookStage.BEFORE_ENRICH, HookCategory.DATA, "Before Enrich", "Fires before records are enriched", {"stepKey": "enrich"}),
            _info(
                HookStage.AFTER_ENRICH,
                HookCategory.DATA,
                "After Enrich",
                "Fires after records are enriched",
                {"stepKey": "enrich", "enrichedFields": ["category", "price"]},
            ),
            _info(HookStage.BEFORE_ROUTE, HookCategory.DATA, "Before Route", "Fires before records are routed", {"stepKey": "route", "recordCount": 45}),
            _info(
                HookStage.AFTER_ROUTE,
                HookCategory.DATA,
                "After Route",
                "Fires after records are routed to branches",
                {"stepKey": "route", "destinations": {"products": 30, "inventory": 15}},
            ),
            _info(
                HookStage.BEFORE_LOAD,
                HookCategory.DATA,
                "Before Load",
                "Fires before records are loaded",
                {"stepKey": "load", "destination": "vendure", "recordCount": 45},
            ),
            _info(
                HookStage.AFTER_LOAD,
                HookCategory.DATA,
                "After Load",
                "Fires after records are loaded",
                {"stepKey": "load", "created": 20, "updated": 25, "errors": 0},
            ),
            _info(
                HookStage.ON_ERROR,
                HookCategory.ERROR,
                "On Error",
                "Fires when a record fails",
                {"error": "Validation failed", "record": {"id": 1}, "stepKey": "validate"},
            ),
            _info(HookStage.ON_RETRY, HookCategory.ERROR, "On Retry", "Fires when failed records are retried", {"errorId": "456", "attempt": 2, "maxAttempts": 3}),
            _info(
                HookStage.ON_DEAD_LETTER,
                HookCategory.ERROR,
                "On Dead Letter",
                "Fires when a record is moved to the dead letter queue",
                {"errorId": "456", "reason": "Max retries exceeded", "record": {"id": 1}},
            ),
        )
    }
)

# Step types with a BEFORE/AFTER hook pair; other types fire nothing
STEP_HOOK_STAGES: Mapping[StepType, tuple[HookStage, HookStage]] = MappingProxyType(
    {
        StepType.EXTRACT: (HookStage.BEFORE_EXTRACT, HookStage.AFTER_EXTRACT),
        StepType.TRANSFORM: (HookStage.BEFORE_TRANSFORM, HookStage.AFTER_TRANSFORM),
        StepType.VALIDATE: (HookStage.BEFORE_VALIDATE, HookStage.AFTER_VALIDATE),
        StepType.ENRICH: (HookStage.BEFORE_ENRICH, HookStage.AFTER_ENRICH),
        StepType.ROUTE: (HookStage.BEFORE_ROUTE, HookStage.AFTER_ROUTE),
        StepType.LOAD: (HookStage.BEFORE_LOAD, HookStage.AFTER_LOAD),
    }
)


def hook_catalog() -> list[dict[str, Any]]:
    """Catalog entries in stage declaration order."""
    return [HOOK_CATALOG[stage].to_dict() for stage in HookStage]


def hooks_by_category() -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {category.value: [] for category in HookCategory}
    for entry in hook_catalog():
        grouped[entry["category"]].append(entry)
    return grouped


@dataclass(frozen=True, slots=True)
class HookEvent:
    """A fired hook, as recorded in the dispatcher's history."""

    stage: HookStage
    payload: dict[str, Any]
    run_id: str | None
    at: datetime


@dataclass(slots=True)
class HookDelivery:
    """Outcome of one fire(): how many receivers ran and which failed."""

    stage: HookStage
    delivered: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


_LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class HookDispatcher:
    """Delivers hook events to listeners and definition actions. Thread-safe.

    Example:
        dispatcher = HookDispatcher(manager.pluggy_manager).bind(definition.hooks)
        dispatcher.fire(HookStage.AFTER_TRANSFORM, {"stepKey": "map", "recordCount": 3}, run_id=run.id)
    """

    def __init__(
        self,
        plugin_manager: pluggy.PluginManager | None = None,
        actions: Mapping[HookStage, list[HookAction]] | None = None,
        *,
        history_size: int = 1000,
    ) -> None:
        self._pm = plugin_manager
        self._actions = dict(actions or {})
        self._history_size = history_size
        self._history: deque[HookEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def bind(self, actions: Mapping[HookStage, list[HookAction]]) -> HookDispatcher:
        """A dispatcher sharing this one's listeners, with per-pipeline actions."""
        return HookDispatcher(self._pm, actions, history_size=self._history_size)

    @property
    def history(self) -> list[HookEvent]:
        with self._lock:
            return list(self._history)

    def events(self, stage: HookStage | None = None) -> list[HookEvent]:
        return [e for e in self.history if stage is None or e.stage == stage]

    def _listeners(self, hook_name: str) -> list[Any]:
        if self._pm is None:
            return []
        caller = getattr(self._pm.hook, hook_name, None)
        if caller is None:
            return []
        return [impl for impl in caller.get_hookimpls() if not (impl.wrapper or impl.hookwrapper)]

    def _call_each(self, hook_name: str, kwargs: dict[str, Any], delivery: HookDelivery) -> None:
        """Call every listener of ``hook_name`` through its own pluggy subset caller.

        Each call goes through pluggy, so hook wrappers and call monitoring
        apply, but sees a single listener; one raising does not stop the rest.
        """
        impls = self._listeners(hook_name)
        if not impls:
            return
        assert self._pm is not None
        plugins = [impl.plugin for impl in impls]
        for impl in impls:
            caller = self._pm.subset_hook_caller(hook_name, remove_plugins=[p for p in plugins if p is not impl.plugin])
            try:
                caller(**kwargs)
            except Exception as e:
                delivery.failures.append(f"{impl.plugin_name}: {e}")
                slog.warning("hook_listener_failed", hook=hook_name, plugin=impl.plugin_name, stage=kwargs.get("stage"), error=str(e))
            else:
                delivery.delivered += 1

    def _run_action(self, action: HookAction, stage: HookStage, payload: dict[str, Any], run_id: str | None, delivery: HookDelivery) -> None:
        if action.type == HookActionType.LOG:
            slog.log(_LOG_LEVELS[action.level], action.message or stage.value, hook_stage=stage.value, run_id=run_id, payload=payload)
            delivery.delivered += 1
        elif action.type == HookActionType.EMIT:
            assert action.event is not None  # enforced by HookAction validation
            self._call_each("hubflow_on_event", {"event": action.event, "payload": payload, "run_id": run_id}, delivery)

    def fire(self, stage: HookStage, payload: dict[str, Any], *, run_id: str | None = None) -> HookDelivery:
        """Deliver one hook event. Never raises because of a receiver."""
        event_payload = copy.deepcopy(payload)
        with self._lock:
            self._history.append(HookEvent(stage=stage, payload=event_payload, run_id=run_id, at=datetime.now(UTC)))

        delivery = HookDelivery(stage=stage)
        for action in self._actions.get(stage, []):
            self._run_action(action, stage, event_payload, run_id, delivery)
        self._call_each("hubflow_on_hook", {"stage": stage.value, "payload": event_payload, "run_id": run_id}, delivery)
        return delivery

    def test_hook(self, stage: HookStage, payload: dict[str, Any] | None = None) -> HookDelivery:
        """Fire ``stage`` with the given payload or the catalog's example payload."""
        body = payload if payload is not None else dict(HOOK_CATALOG[stage].example_payload)
        slog.info("hook_test_fired", stage=stage.value)
        return self.fire(stage, copy.deepcopy(body), run_id=None)
