# tests/engine/test_spans.py
"""Tests for SpanFactory with and without a tracer."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from hubflow.engine.spans import DisabledSpan, SpanFactory


class RecordingTracer:
    def __init__(self) -> None:
        self.opened: list[tuple[str, dict[str, Any]]] = []
        self.depth: list[int] = []
        self._current = 0

    @contextmanager
    def start_as_current_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[str]:
        self.opened.append((name, dict(attributes or {})))
        self.depth.append(self._current)
        self._current += 1
        try:
            yield name
        finally:
            self._current -= 1


class TestSpanFactory:
    def test_disabled_yields_shared_span(self) -> None:
        spans = SpanFactory()

        with spans.run_span("run-1", "orders") as run, spans.step_span("a", "TRANSFORM") as step:
            assert isinstance(run, DisabledSpan)
            assert run is step
            assert not run.is_recording()
        assert not spans.enabled

    def test_nested_spans_with_attributes(self) -> None:
        tracer = RecordingTracer()
        spans = SpanFactory(tracer)  # type: ignore[arg-type]

        with spans.run_span("run-1", "orders"):
            with spans.step_span("transform", "TRANSFORM", adapter_code="map"):
                with spans.chunk_span("transform", 2, record_count=50) as chunk:
                    assert chunk == "chunk:2"

        assert spans.enabled
        assert tracer.opened == [
            ("run", {"run.id": "run-1", "pipeline.id": "orders"}),
            ("step:transform", {"step.key": "transform", "step.type": "TRANSFORM", "adapter.code": "map"}),
            ("chunk:2", {"step.key": "transform", "chunk.index": 2, "chunk.records": 50}),
        ]
        assert tracer.depth == [0, 1, 2]

    def test_missing_attributes_are_omitted(self) -> None:
        tracer = RecordingTracer()

        with SpanFactory(tracer).step_span("extract", "EXTRACT"):  # type: ignore[arg-type]
            pass

        assert tracer.opened == [("step:extract", {"step.key": "extract", "step.type": "EXTRACT"})]
