# src/hubflow/engine/spans.py
"""Tracing for runs, steps and adapter calls.

Spans nest as the runtime does:

    run            run.id, pipeline.id
      step:{key}   step.key, step.type, adapter.code
        chunk:{n}  step.key, chunk.index, chunk.records

Without a tracer every context manager yields the shared DisabledSpan, so
callers never branch on whether tracing is on. opentelemetry-api is only
needed for type checking; any object with ``start_as_current_span`` works.
"""

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer


class DisabledSpan:
    """Stands in for a Span when tracing is off."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: Any) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass

    def is_recording(self) -> bool:
        return False


_DISABLED = DisabledSpan()


class SpanFactory:
    """Opens spans on an optional tracer.

    Example:
        spans = SpanFactory(opentelemetry.trace.get_tracer("hubflow"))
        with spans.run_span(run.id, "orders"):
            with spans.step_span("transform", "TRANSFORM", adapter_code="map"):
                with spans.chunk_span("transform", 0, record_count=100):
                    adapter.execute(chunk, ctx)
    """

    def __init__(self, tracer: "Tracer | None" = None) -> None:
        self._tracer = tracer

    @property
    def enabled(self) -> bool:
        return self._tracer is not None

    @contextmanager
    def _span(self, name: str, attributes: Mapping[str, Any]) -> Iterator["Span | DisabledSpan"]:
        if self._tracer is None:
            yield _DISABLED
            return
        # None attributes are invalid in OpenTelemetry
        present = {key: value for key, value in attributes.items() if value is not None}
        with self._tracer.start_as_current_span(name, attributes=present) as span:
            yield span

    def run_span(self, run_id: str, pipeline_id: str) -> Any:
        return self._span("run", {"run.id": run_id, "pipeline.id": pipeline_id})

    def step_span(self, step_key: str, step_type: str, *, adapter_code: str | None = None) -> Any:
        return self._span(f"step:{step_key}", {"step.key": step_key, "step.type": step_type, "adapter.code": adapter_code})

    def chunk_span(self, step_key: str, index: int, *, record_count: int) -> Any:
        return self._span(f"chunk:{index}", {"step.key": step_key, "chunk.index": index, "chunk.records": record_count})
