# src/hubflow/engine/executors/step.py
"""StepExecutor - runs one step's adapter over its input records.

Per step execution:
1. Skip disabled steps and steps whose condition is false
2. Fire BEFORE_<STAGE>
3. Split input into chunks and admit them through the ThroughputController
4. Call the adapter per chunk (timeout, step-level retry of transient failures)
5. Resubmit retriable record errors within the pipeline's record retry budget
6. Report final record errors (ON_ERROR) and dead-letter them (ON_DEAD_LETTER)
7. Re-assemble chunk outputs in input order and fire AFTER_<STAGE>

Record-level failures are values; exceptions raised by the adapter are
converted to PipelineErrors at the chunk boundary.
"""

from __future__ import annotations

import copy
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from threading import Event, Semaphore
from typing import Any

import structlog

from hubflow.contracts.enums import HookStage, StepStatus, StepType
from hubflow.contracts.errors import (
    AdapterConfigurationError,
    AdapterTimeoutError,
    ErrorSummary,
    PipelineError,
    stage_for_step_type,
    to_pipeline_error,
)
from hubflow.contracts.results import AdapterResult, Record, RecordError, StepError, StepResult
from hubflow.core.canonical import canonical_json
from hubflow.core.config import RuntimeSettings
from hubflow.core.logging import run_context
from hubflow.engine.compiler import CompiledStep
from hubflow.engine.executors.types import ChunkOutcome, StepRunContext
from hubflow.engine.expression_parser import ExpressionEvaluationError
from hubflow.engine.hooks import STEP_HOOK_STAGES
from hubflow.engine.retry import RetriesExhausted, RetryManager, RetryPolicy
from hubflow.engine.routing import MISSING, get_path
from hubflow.engine.spans import SpanFactory
from hubflow.engine.throughput import AdmissionKind, ThroughputController
from hubflow.plugins.protocols import AdapterContext, AdapterProtocol

slog = structlog.get_logger(__name__)

# Records included in AFTER_EXTRACT payloads
_HOOK_RECORD_SAMPLE = 10


def _merge_meta(into: dict[str, Any], meta: dict[str, Any]) -> None:
    """Fold one chunk's adapter meta into the step's: numbers add up, lists union."""
    for key, value in meta.items():
        current = into.get(key)
        if current is None or isinstance(value, bool) or isinstance(current, bool):
            into[key] = copy.deepcopy(value)
        elif isinstance(value, int | float) and isinstance(current, int | float):
            into[key] = current + value
        elif isinstance(value, dict) and isinstance(current, dict):
            _merge_meta(current, value)
        elif isinstance(value, list) and isinstance(current, list):
            into[key] = current + [v for v in value if v not in current]
        else:
            into[key] = copy.deepcopy(value)


class _StepRun:
    """State of one step execution, shared by the step's chunk workers."""

    def __init__(
        self,
        step: CompiledStep,
        adapter: AdapterProtocol,
        ctx: StepRunContext,
        settings: RuntimeSettings,
        spans: SpanFactory,
        sleep: Callable[[float], None] | None,
    ) -> None:
        assert step.adapter is not None
        self.step = step
        self.node = step.definition
        self.adapter = adapter
        self.ctx = ctx
        self.spans = spans
        self.sleep: Callable[[float], None] = sleep if sleep is not None else ctx.cancel.wait
        self.controller = ThroughputController(
            self.node.key,
            step.throughput,
            settings.throughput,
            default_concurrency=self.node.concurrency,
            cancel=ctx.cancel,
            sleep=sleep,
        )
        if step.adapter.retryable:
            self.retry_policy = RetryPolicy.for_step(self.node.retries, self.node.retry_delay_ms, settings.execution.default_retry_delay_ms)
        else:
            self.retry_policy = RetryPolicy.single_attempt()
        self.timeout = self.node.timeout_ms / 1000.0 if self.node.timeout_ms else None
        self.concurrent = (self.node.parallel or self.node.async_ or step.adapter.is_async) and self.controller.concurrency > 1
        self.abort = Event()
        self.total_chunks = 0
        self.adapter_ctx = AdapterContext(
            run_id=ctx.run_id,
            pipeline_id=ctx.pipeline_id,
            step_key=self.node.key,
            step_type=self.node.type,
            variables=ctx.variables,
            dry_run=ctx.dry_run,
            resources=ctx.resources,
            cancel=ctx.cancel,
        )
        # Timed calls run on their own threads so the caller can stop waiting
        self._call_pool: ThreadPoolExecutor | None = None
        if self.timeout is not None:
            workers = min(32, self.controller.concurrency * self.retry_policy.max_attempts + 1)
            self._call_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"hubflow-call-{self.node.key}")

    def should_stop(self) -> bool:
        return self.abort.is_set() or self.ctx.cancel.cancelled

    def close(self) -> None:
        self.controller.close()
        if self._call_pool is not None:
            self._call_pool.shutdown(wait=False, cancel_futures=True)

    # === Chunk scheduling ===

    def run(self, records: list[Record]) -> list[ChunkOutcome]:
        if self.step.adapter is not None and not self.step.adapter.batchable:
            chunks = [[r] for r in records] or [[]]
        else:
            chunks = self.controller.chunk(records)
        self.total_chunks = len(chunks)
        offsets = [0]
        for chunk in chunks[:-1]:
            offsets.append(offsets[-1] + len(chunk))

        outcomes: dict[int, ChunkOutcome] = {}
        if self.concurrent:
            self._run_concurrent(chunks, offsets, outcomes)
        else:
            for index, chunk in enumerate(chunks):
                if self.should_stop():
                    break
                admission = self.controller.admit(index, chunk)
                if admission.kind == AdmissionKind.SHED:
                    outcomes[index] = ChunkOutcome(index=index, offset=offsets[index], input_count=len(chunk), dropped=len(chunk))
                elif admission.kind == AdmissionKind.ADMIT:
                    outcomes[index] = self.run_chunk(index, offsets[index], chunk, admission.ticket)

        while self.controller.is_backpressured and not self.should_stop():
            for index, chunk in self.controller.release_queued():
                if self.should_stop():
                    break
                outcomes[index] = self.run_chunk(index, offsets[index], chunk, 0)

        return [outcomes[i] for i in sorted(outcomes)]

    def _run_concurrent(self, chunks: list[list[Record]], offsets: list[int], outcomes: dict[int, ChunkOutcome]) -> None:
        # Bounding in-flight chunks keeps error-window decisions close to real time
        semaphore = Semaphore(self.controller.concurrency)
        futures: list[Future[ChunkOutcome]] = []
        with ThreadPoolExecutor(max_workers=self.controller.concurrency, thread_name_prefix=f"hubflow-step-{self.node.key}") as pool:
            for index, chunk in enumerate(chunks):
                semaphore.acquire()
                if self.should_stop():
                    semaphore.release()
                    break
                admission = self.controller.admit(index, chunk)
                if admission.kind != AdmissionKind.ADMIT:
                    semaphore.release()
                    if admission.kind == AdmissionKind.SHED:
                        outcomes[index] = ChunkOutcome(index=index, offset=offsets[index], input_count=len(chunk), dropped=len(chunk))
                    continue
                future = pool.submit(self.run_chunk, index, offsets[index], chunk, admission.ticket)
                future.add_done_callback(lambda _f: semaphore.release())
                futures.append(future)
            for future in futures:
                outcome = future.result()
                outcomes[outcome.index] = outcome

    # === One chunk ===

    def run_chunk(self, index: int, offset: int, chunk: list[Record], ticket: int) -> ChunkOutcome:
        """Process one admitted chunk. Never raises for adapter failures."""
        outcome = ChunkOutcome(index=index, offset=offset, input_count=len(chunk))
        with run_context(run_id=self.ctx.run_id, step_key=self.node.key):
            try:
                with self.spans.chunk_span(self.node.key, index, record_count=len(chunk)):
                    self._absorb(outcome, chunk, self._call_with_retry(chunk, index))
                    if self.ctx.error_handling.max_retries > 0:
                        self._retry_records(outcome, chunk)
            except Exception as e:
                self._fail_chunk(outcome, chunk, e)

            if self.controller.discard_inflight(ticket):
                discarded = outcome.output_count
                outcome.records = []
                if outcome.branches is not None:
                    outcome.branches = {name: [] for name in outcome.branches}
                outcome.dropped += discarded
                self.controller.note_discarded(discarded)
                slog.info("chunk_output_discarded", chunk=index, records=discarded)
            self.controller.record_outcome(len(chunk), len(outcome.errors))

            if (outcome.errors or outcome.failure is not None) and not self.node.continue_on_error:
                self.abort.set()
            self._report_errors(outcome, chunk)
        return outcome

    def _fail_chunk(self, outcome: ChunkOutcome, chunk: list[Record], exc: Exception) -> None:
        attempts = 1
        if isinstance(exc, RetriesExhausted):
            attempts = exc.attempts
            cause: BaseException = exc.last_error
        else:
            cause = exc
        error = to_pipeline_error(cause, step_key=self.node.key, step_type=self.node.type)
        error.details.setdefault("attempts", attempts)
        outcome.failure = error
        outcome.records = []
        outcome.branches = None
        outcome.errors = [
            RecordError(index=i, message=error.message, code=error.code, retryable=error.retryable, record=record)
            for i, record in enumerate(chunk)
        ]
        slog.warning(
            "chunk_failed",
            chunk=outcome.index,
            stage=error.stage.value,
            attempts=attempts,
            error=error.message,
        )

    def _invoke(self, records: list[Record]) -> AdapterResult:
        if self._call_pool is None:
            result = self.adapter.execute(list(records), self.adapter_ctx)
        else:
            future = self._call_pool.submit(self.adapter.execute, list(records), self.adapter_ctx)
            try:
                result = future.result(timeout=self.timeout)
            except TimeoutError as e:
                if future.done():
                    raise
                future.cancel()
                raise AdapterTimeoutError(f"Adapter call exceeded {self.node.timeout_ms}ms", step_key=self.node.key) from e
        if not isinstance(result, AdapterResult):
            raise PipelineError(
                f"Adapter '{self.step.adapter.code if self.step.adapter else '?'}' returned {type(result).__name__}, expected AdapterResult",
                stage=stage_for_step_type(self.node.type),
                step_key=self.node.key,
                code="ADAPTER_CONTRACT",
            )
        return result

    def _call_with_retry(self, records: list[Record], chunk_index: int) -> AdapterResult:
        max_attempts = self.retry_policy.max_attempts

        def on_retry(attempt: int, error: BaseException) -> None:
            slog.warning("adapter_call_retry", chunk=chunk_index, attempt=attempt, max_attempts=max_attempts, error=str(error))
            self.ctx.hooks.fire(
                HookStage.ON_RETRY,
                {"stepKey": self.node.key, "chunk": chunk_index, "attempt": attempt + 1, "maxAttempts": max_attempts, "error": str(error)},
                run_id=self.ctx.run_id,
            )

        manager = RetryManager(self.retry_policy, step_type=self.node.type, sleep=self.sleep)
        return manager.call(lambda: self._invoke(records), on_retry=on_retry)

    def _absorb(self, outcome: ChunkOutcome, chunk: list[Record], result: AdapterResult) -> None:
        errors: list[RecordError] = []
        for error in result.errors:
            if not 0 <= error.index < len(chunk):
                raise PipelineError(
                    f"Adapter reported an error for record index {error.index} of a {len(chunk)}-record chunk",
                    stage=stage_for_step_type(self.node.type),
                    step_key=self.node.key,
                    code="ADAPTER_CONTRACT",
                )
            errors.append(error if error.record is not None else replace(error, record=chunk[error.index]))
        outcome.errors = errors
        outcome.dropped += result.dropped
        _merge_meta(outcome.meta, result.meta)
        if result.branches is not None:
            outcome.branches = {name: list(records) for name, records in result.branches.items()}
        else:
            outcome.records = list(result.records)

    def _retry_records(self, outcome: ChunkOutcome, chunk: list[Record]) -> None:
        """Resubmit retriable record errors within the record retry budget."""
        handling = self.ctx.error_handling
        while outcome.record_retries < handling.max_retries and not self.ctx.cancel.cancelled:
            retriable = [e for e in outcome.errors if e.retryable]
            if not retriable:
                return
            outcome.record_retries += 1
            attempt = outcome.record_retries
            self.ctx.hooks.fire(
                HookStage.ON_RETRY,
                {"stepKey": self.node.key, "attempt": attempt, "maxAttempts": handling.max_retries, "recordCount": len(retriable)},
                run_id=self.ctx.run_id,
            )
            if handling.retry_delay_ms:
                self.sleep(handling.retry_delay_ms / 1000.0)
            resubmit = [chunk[e.index] for e in retriable]
            try:
                result = self._call_with_retry(resubmit, outcome.index)
            except Exception as e:
                # The earlier errors stand; a failing resubmission does not fail the chunk
                slog.warning("record_retry_failed", chunk=outcome.index, attempt=attempt, error=str(e))
                return
            remapped = [replace(e, index=retriable[e.index].index, record=e.record or resubmit[e.index]) for e in result.errors if 0 <= e.index < len(resubmit)]
            outcome.errors = [e for e in outcome.errors if not e.retryable] + remapped
            outcome.dropped += result.dropped
            _merge_meta(outcome.meta, result.meta)
            if result.branches is not None:
                merged = outcome.branches if outcome.branches is not None else {}
                for name, records in result.branches.items():
                    merged.setdefault(name, []).extend(records)
                outcome.branches = merged
            else:
                outcome.records.extend(result.records)

    def _report_errors(self, outcome: ChunkOutcome, chunk: list[Record]) -> None:
        ctx = self.ctx
        if outcome.failure is not None and not chunk:
            ctx.hooks.fire(HookStage.ON_ERROR, {"stepKey": self.node.key, "error": outcome.failure.message, "record": None}, run_id=ctx.run_id)
            return

        capture = ctx.dead_letters is not None and ctx.capture_dead_letters and ctx.error_handling.dead_letter_queue and not ctx.dry_run
        stage = outcome.failure.stage if outcome.failure is not None else stage_for_step_type(self.node.type)
        for error in outcome.errors:
            ctx.hooks.fire(
                HookStage.ON_ERROR,
                {
                    "stepKey": self.node.key,
                    "error": error.message,
                    "code": error.code,
                    "field": error.field,
                    "recordIndex": outcome.offset + error.index,
                    "retryable": error.retryable,
                    "record": error.record,
                },
                run_id=ctx.run_id,
            )
            if not capture or ctx.dead_letters is None:
                continue
            source = chunk[error.index]
            exhausted = error.retryable and outcome.record_retries > 0
            try:
                entry = ctx.dead_letters.capture(
                    run_id=ctx.run_id,
                    pipeline_id=ctx.pipeline_id,
                    step_key=self.node.key,
                    step_type=self.node.type,
                    record=source,
                    message=error.message,
                    code=error.code,
                    field=error.field,
                    stage=stage,
                    retryable=error.retryable,
                    retry_count=outcome.record_retries,
                )
            except (ValueError, TypeError) as e:
                slog.warning("dead_letter_capture_failed", record_index=outcome.offset + error.index, error=str(e))
                continue
            ctx.hooks.fire(
                HookStage.ON_DEAD_LETTER,
                {
                    "errorId": entry.error_id,
                    "reason": "Max retries exceeded" if exhausted else error.message,
                    "record": source,
                    "stepKey": self.node.key,
                },
                run_id=ctx.run_id,
            )


class StepExecutor:
    """Executes one compiled step.

    Example:
        executor = StepExecutor(settings, span_factory)
        result = executor.execute(plan.step("transform"), records, step_ctx)
        if result.status == StepStatus.ERROR:
            ...
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        spans: SpanFactory | None = None,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            settings: Runtime settings (throughput tuning, retry defaults)
            spans: Span factory for tracing
            sleep: Replaces cancellable waits (retry delays, backoff); for tests
        """
        self._settings = settings or RuntimeSettings()
        self._spans = spans or SpanFactory()
        self._sleep = sleep

    def execute(self, step: CompiledStep, records: list[Record], ctx: StepRunContext) -> StepResult:
        """Run a step over its input.

        Returns:
            StepResult with counts, errors and the output for successors
        """
        started = time.perf_counter()
        node = step.definition

        if node.disabled:
            return self._skipped(step, records, "disabled", started)
        if step.condition is not None:
            try:
                enabled = bool(step.condition.evaluate({}, dict(ctx.variables)))
            except ExpressionEvaluationError as e:
                error = AdapterConfigurationError(f"Step condition failed: {e}", step_key=node.key)
                return self._finish_early(step, records, StepStatus.ERROR, started, failure=error)
            if not enabled:
                return self._skipped(step, records, "condition", started)
        if ctx.cancel.cancelled:
            return self._finish_early(step, records, StepStatus.CANCELLED, started)

        with run_context(step_key=node.key), self._spans.step_span(node.key, node.type.value, adapter_code=node.adapter_code):
            return self._execute(step, records, ctx, started)

    # === Internals ===

    def _execute(self, step: CompiledStep, records: list[Record], ctx: StepRunContext, started: float) -> StepResult:
        node = step.definition
        stages = STEP_HOOK_STAGES.get(node.type)
        input_count = len(records)
        records, duplicates = self._dedupe(step, records, ctx)

        if stages is not None:
            ctx.hooks.fire(stages[0], self._before_payload(step, records, ctx), run_id=ctx.run_id)

        run: _StepRun | None = None
        meta: dict[str, Any] = {}
        if step.adapter is None:
            # Adapter-less TRIGGER steps hand their seed records through
            outcomes = [ChunkOutcome(index=0, offset=0, input_count=len(records), records=list(records))]
        elif ctx.dry_run and node.type.has_side_effects and not step.adapter.pure:
            outcomes = [ChunkOutcome(index=0, offset=0, input_count=len(records), records=list(records))]
            meta["simulated"] = True
        else:
            try:
                adapter = self._instantiate(step)
            except PipelineError as e:
                result = self._finish_early(step, records, StepStatus.ERROR, started, failure=e, input_count=input_count)
                if stages is not None:
                    ctx.hooks.fire(stages[1], self._after_payload(step, result), run_id=ctx.run_id)
                return result
            run = _StepRun(step, adapter, ctx, self._settings, self._spans, self._sleep)
            try:
                outcomes = run.run(records)
            finally:
                run.close()
                adapter.close()
            meta["throughput"] = run.controller.get_stats()

        if duplicates:
            meta["duplicates"] = duplicates
        result = self._build_result(step, input_count, duplicates, outcomes, run, ctx, meta, started)
        if stages is not None:
            ctx.hooks.fire(stages[1], self._after_payload(step, result), run_id=ctx.run_id)
        slog.info(
            "step_completed",
            status=result.status.value,
            input=result.input_count,
            output=result.output_count,
            errors=result.error_count,
            dropped=result.dropped_count,
            duration_ms=round(result.duration_ms, 3),
        )
        return result

    @staticmethod
    def _instantiate(step: CompiledStep) -> AdapterProtocol:
        assert step.adapter is not None and step.adapter.adapter_cls is not None
        try:
            return step.adapter.adapter_cls(step.config)  # type: ignore[arg-type]
        except PipelineError:
            raise
        except Exception as e:
            raise AdapterConfigurationError(
                f"Adapter '{step.adapter.code}' could not be initialized: {e}", step_key=step.key
            ) from e

    @staticmethod
    def _dedupe(step: CompiledStep, records: list[Record], ctx: StepRunContext) -> tuple[list[Record], int]:
        """Drop LOAD records whose idempotency key already occurred in the batch."""
        key_field = ctx.idempotency_key_field
        if key_field is None or step.type != StepType.LOAD:
            return records, 0
        seen: set[str] = set()
        kept: list[Record] = []
        duplicates = 0
        for record in records:
            value = get_path(record, key_field)
            if value is MISSING or value is None:
                kept.append(record)
                continue
            marker = canonical_json(value)
            if marker in seen:
                duplicates += 1
                continue
            seen.add(marker)
            kept.append(record)
        return kept, duplicates

    def _build_result(
        self,
        step: CompiledStep,
        input_count: int,
        duplicates: int,
        outcomes: list[ChunkOutcome],
        run: _StepRun | None,
        ctx: StepRunContext,
        meta: dict[str, Any],
        started: float,
    ) -> StepResult:
        node = step.definition
        output: list[Record] = []
        branches: dict[str, list[Record]] | None = None
        errors: list[StepError] = []
        dropped = duplicates
        record_retries = 0
        failures: list[PipelineError] = []

        for outcome in outcomes:
            if outcome.branches is not None:
                if branches is None:
                    branches = {}
                for name, records in outcome.branches.items():
                    branches.setdefault(name, []).extend(records)
            else:
                output.extend(outcome.records)
            errors.extend(StepError.from_record_error(e, outcome.offset) for e in outcome.errors)
            if outcome.failure is not None:
                failures.append(outcome.failure)
                if not outcome.input_count:
                    errors.append(StepError(message=outcome.failure.message, code=outcome.failure.code, retryable=outcome.failure.retryable))
            dropped += outcome.dropped
            record_retries += outcome.record_retries
            _merge_meta(meta, outcome.meta)

        if branches is not None and step.route is not None:
            for name in sorted(step.route.branch_names):
                branches.setdefault(name, [])
        if record_retries:
            meta["recordRetries"] = record_retries

        error_count = sum(len(o.errors) for o in outcomes)
        halted = run is not None and run.abort.is_set()
        unfinished = run is not None and len(outcomes) < run.total_chunks
        failure: PipelineError | None = None

        if halted or (failures and not node.continue_on_error):
            status = StepStatus.ERROR
            failure = failures[0] if failures else PipelineError(
                f"Step '{node.key}' stopped after {error_count} record error(s)",
                stage=stage_for_step_type(node.type),
                step_key=node.key,
                code="RECORD_ERRORS",
            )
        elif ctx.cancel.cancelled and unfinished:
            status = StepStatus.CANCELLED
        else:
            status = StepStatus.SUCCESS

        output_count = sum(len(r) for r in branches.values()) if branches is not None else len(output)
        return StepResult(
            step_key=node.key,
            step_type=node.type,
            status=status,
            input_count=input_count,
            output_count=output_count,
            error_count=error_count if error_count else len(errors),
            dropped_count=dropped,
            duration_ms=(time.perf_counter() - started) * 1000,
            errors=errors,
            output=output,
            branches=branches,
            meta=meta,
            failure=ErrorSummary.from_error(failure) if failure is not None else None,
        )

    @staticmethod
    def _skipped(step: CompiledStep, records: list[Record], reason: str, started: float) -> StepResult:
        slog.info("step_skipped", step_key=step.key, reason=reason)
        return StepResult(
            step_key=step.key,
            step_type=step.type,
            status=StepStatus.SKIPPED,
            input_count=len(records),
            duration_ms=(time.perf_counter() - started) * 1000,
            meta={"skipReason": reason},
        )

    @staticmethod
    def _finish_early(
        step: CompiledStep,
        records: list[Record],
        status: StepStatus,
        started: float,
        *,
        failure: PipelineError | None = None,
        input_count: int | None = None,
    ) -> StepResult:
        errors = [StepError(message=failure.message, code=failure.code, retryable=failure.retryable)] if failure is not None else []
        return StepResult(
            step_key=step.key,
            step_type=step.type,
            status=status,
            input_count=len(records) if input_count is None else input_count,
            error_count=len(errors),
            duration_ms=(time.perf_counter() - started) * 1000,
            errors=errors,
            failure=ErrorSummary.from_error(failure) if failure is not None else None,
        )

    # === Hook payloads ===

    @staticmethod
    def _before_payload(step: CompiledStep, records: list[Record], ctx: StepRunContext) -> dict[str, Any]:
        node = step.definition
        payload: dict[str, Any] = {"stepKey": node.key, "recordCount": len(records), "adapterCode": node.adapter_code}
        if node.type == StepType.EXTRACT:
            payload["config"] = copy.deepcopy(node.config)
        elif node.type == StepType.VALIDATE:
            payload["schemaCode"] = node.config.get("schemaCode")
        elif node.type == StepType.LOAD:
            payload["destination"] = node.config.get("destination", node.adapter_code)
        if ctx.dry_run:
            payload["dryRun"] = True
        return payload

    @staticmethod
    def _after_payload(step: CompiledStep, result: StepResult) -> dict[str, Any]:
        node = step.definition
        payload: dict[str, Any] = {
            "stepKey": node.key,
            "status": result.status.value,
            "inputCount": result.input_count,
            "recordCount": result.output_count,
            "errorCount": result.error_count,
            "dropped": result.dropped_count,
            "duration": round(result.duration_ms, 3),
        }
        if result.failure is not None:
            payload["error"] = result.failure.message
        if node.type == StepType.EXTRACT:
            payload["records"] = copy.deepcopy(result.output[:_HOOK_RECORD_SAMPLE])
        elif node.type == StepType.VALIDATE:
            payload["valid"] = result.output_count
            payload["invalid"] = result.error_count
        elif node.type == StepType.ENRICH:
            payload["enrichedFields"] = list(result.meta.get("enrichedFields", []))
        elif node.type == StepType.ROUTE:
            payload["destinations"] = {name: len(records) for name, records in (result.branches or {}).items()}
        elif node.type == StepType.LOAD:
            payload["destination"] = result.meta.get("destination", node.config.get("destination", node.adapter_code))
            payload["created"] = result.meta.get("created", 0)
            payload["updated"] = result.meta.get("updated", 0)
            payload["errors"] = result.error_count
        return payload
