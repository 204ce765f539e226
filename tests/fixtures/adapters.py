# tests/fixtures/adapters.py
"""Adapters and hook listeners used by engine and service tests.

The adapters have no typed config model, so they receive a
GenericAdapterConfig and read their knobs with getattr().
"""

from __future__ import annotations

import threading
import time
from typing import Any

from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.errors import AdapterAuthenticationError
from hubflow.contracts.results import AdapterResult, Record, RecordError
from hubflow.plugins.base import BaseAdapter
from hubflow.plugins.hookspecs import hookimpl
from hubflow.plugins.protocols import AdapterContext


def _knob(adapter: BaseAdapter, name: str, default: Any) -> Any:
    return getattr(adapter.config, name, default)


class FlakyLoad(BaseAdapter):
    """Raises ConnectionError for the first ``failures`` calls, then loads everything."""

    code = "test-flaky-load"
    step_type = StepType.LOAD
    name = "Flaky load"
    category = AdapterCategory.DESTINATION

    def __init__(self, config: Any) -> None:
        super().__init__(config)
        self.calls = 0

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        self.calls += 1
        if self.calls <= _knob(self, "failures", 0):
            raise ConnectionError(f"connection refused (call {self.calls})")
        return AdapterResult(records=list(records), meta={"calls": self.calls})


class AuthFailLoad(BaseAdapter):
    """Always fails authentication; counts calls in a class attribute."""

    code = "test-auth-fail-load"
    step_type = StepType.LOAD
    name = "Auth failure"
    category = AdapterCategory.DESTINATION
    calls = 0

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        type(self).calls += 1
        raise AdapterAuthenticationError("credentials rejected")


class SlowTransform(BaseAdapter):
    """Sleeps ``delayMs`` before passing records through."""

    code = "test-slow"
    step_type = StepType.TRANSFORM
    name = "Slow transform"
    category = AdapterCategory.UTILITY
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        time.sleep(_knob(self, "delayMs", 0) / 1000)
        return AdapterResult(records=list(records))


class CancelOnMarker(BaseAdapter):
    """Passes records through and cancels the run when one carries ``cancel_here``."""

    code = "test-cancel-on-marker"
    step_type = StepType.TRANSFORM
    name = "Cancel on marker"
    category = AdapterCategory.UTILITY
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        if ctx.cancel is not None and any(r.get("cancel_here") for r in records):
            ctx.cancel.cancel("marker record seen")
        return AdapterResult(records=list(records))


class RecoveringRecords(BaseAdapter):
    """Reports every record as a retryable error until ``recoverAfter`` calls have been made."""

    code = "test-recovering"
    step_type = StepType.TRANSFORM
    name = "Recovering records"
    category = AdapterCategory.UTILITY
    pure = True

    def __init__(self, config: Any) -> None:
        super().__init__(config)
        self.calls = 0

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        self.calls += 1
        if self.calls <= _knob(self, "recoverAfter", 0):
            return AdapterResult(
                errors=[RecordError(index=i, message="upstream busy", code="BUSY", retryable=True) for i in range(len(records))]
            )
        return AdapterResult(records=list(records))


class ContractBreaker(BaseAdapter):
    """Returns something other than an AdapterResult."""

    code = "test-contract-breaker"
    step_type = StepType.TRANSFORM
    name = "Contract breaker"
    category = AdapterCategory.UTILITY
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        return list(records)  # type: ignore[return-value]


class ConcurrencyGauge(BaseAdapter):
    """Tracks the highest number of concurrent execute() calls."""

    code = "test-concurrency-gauge"
    step_type = StepType.TRANSFORM
    name = "Concurrency gauge"
    category = AdapterCategory.UTILITY
    pure = True
    is_async = True

    lock = threading.Lock()
    active = 0
    peak = 0

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cls = type(self)
        with cls.lock:
            cls.active += 1
            cls.peak = max(cls.peak, cls.active)
        try:
            time.sleep(0.02)
            return AdapterResult(records=[{**r, "seen": True} for r in records])
        finally:
            with cls.lock:
                cls.active -= 1


TEST_ADAPTERS = (FlakyLoad, AuthFailLoad, SlowTransform, CancelOnMarker, RecoveringRecords, ContractBreaker, ConcurrencyGauge)


class TestAdapters:
    """pluggy plugin contributing the test adapters."""

    __test__ = False

    @hookimpl
    def hubflow_get_adapters(self) -> list[type[BaseAdapter]]:
        return list(TEST_ADAPTERS)


class RecordingListener:
    """Hook listener remembering every event it receives."""

    def __init__(self) -> None:
        self.hooks: list[tuple[str, dict[str, Any], str | None]] = []
        self.events: list[tuple[str, dict[str, Any], str | None]] = []
        self._lock = threading.Lock()

    @hookimpl
    def hubflow_on_hook(self, stage: str, payload: dict[str, Any], run_id: str | None) -> None:
        with self._lock:
            self.hooks.append((stage, payload, run_id))

    @hookimpl
    def hubflow_on_event(self, event: str, payload: dict[str, Any], run_id: str | None) -> None:
        with self._lock:
            self.events.append((event, payload, run_id))

    def stages(self, run_id: str | None = None) -> list[str]:
        with self._lock:
            return [stage for stage, _, rid in self.hooks if run_id is None or rid == run_id]

    def payloads(self, stage: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for s, payload, _ in self.hooks if s == stage]


class FailingListener:
    """Hook listener that always raises."""

    @hookimpl
    def hubflow_on_hook(self, stage: str, payload: dict[str, Any], run_id: str | None) -> None:
        raise RuntimeError("listener exploded")
