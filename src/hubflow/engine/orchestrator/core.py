# src/hubflow/engine/orchestrator/core.py
"""RunOrchestrator: drives a compiled plan through a run's lifecycle.

Coordinates:
- Run state transitions (PENDING -> RUNNING -> SUCCESS/ERROR/CANCELLED)
- Stage-by-stage execution, steps of a stage in parallel
- Feeding each step's output along its outgoing edges
- Pipeline lifecycle hooks
- Replays of a sub-plan (patch-and-retry) and dry runs
"""

from __future__ import annotations

import copy
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from hubflow.contracts.enums import ErrorStage, HookStage, RunStatus, StepStatus, StepType
from hubflow.contracts.errors import ErrorSummary, PipelineError, RunCancelledError, to_pipeline_error
from hubflow.contracts.results import (
    DryRunResult,
    DryRunSample,
    PipelineRun,
    Record,
    RunMetrics,
    StepResult,
)
from hubflow.core.config import RuntimeSettings
from hubflow.core.logging import run_context
from hubflow.engine.cancellation import CancellationToken
from hubflow.engine.compiler import CompiledEdge, CompiledStep, ExecutionPlan
from hubflow.engine.executors import StepExecutor, StepRunContext
from hubflow.engine.expression_parser import ExpressionEvaluationError
from hubflow.engine.hooks import HookDispatcher
from hubflow.engine.orchestrator.types import RunOptions, RunState
from hubflow.engine.spans import SpanFactory

if TYPE_CHECKING:
    from hubflow.core.dead_letter import DeadLetterStore

slog = structlog.get_logger(__name__)

_ROOT_TYPES = frozenset({StepType.EXTRACT, StepType.TRIGGER})


def _now() -> datetime:
    return datetime.now(UTC)


def _edge_records(edge: CompiledEdge, upstream: StepResult, variables: dict[str, Any]) -> list[Record]:
    """Records flowing along one edge from a finished step."""
    if upstream.status != StepStatus.SUCCESS:
        return []
    if upstream.branches is not None:
        if edge.branch is not None:
            records = upstream.branches.get(edge.branch, [])
        else:
            records = [r for branch in upstream.branches.values() for r in branch]
    else:
        records = upstream.output

    if edge.condition is None:
        return [copy.deepcopy(r) for r in records]
    selected: list[Record] = []
    for record in records:
        try:
            if edge.condition.evaluate(record, variables):
                selected.append(copy.deepcopy(record))
        except ExpressionEvaluationError as e:
            slog.warning("edge_condition_failed", edge_id=edge.edge_id, expression=edge.condition.expression, error=str(e))
    return selected


def collect_inputs(step: CompiledStep, results: Mapping[str, StepResult], variables: dict[str, Any]) -> list[Record]:
    """Concatenate the records arriving at ``step`` over its incoming edges, in edge order."""
    records: list[Record] = []
    for edge in step.incoming:
        upstream = results.get(edge.from_key)
        if upstream is not None:
            records.extend(_edge_records(edge, upstream, variables))
    return records


def aggregate_metrics(plan: ExecutionPlan, results: Mapping[str, StepResult], duration_ms: float) -> RunMetrics:
    """Run metrics from step results.

    totalRecords counts what the root steps produced, processedRecords what
    reached leaf steps' outputs; failed and dropped sum over all steps.
    """
    metrics = RunMetrics(duration_ms=duration_ms)
    for key in plan.step_keys:
        result = results.get(key)
        if result is None:
            continue
        step = plan.step(key)
        if step.is_root:
            metrics.total_records += result.output_count
        if not step.outgoing and result.status == StepStatus.SUCCESS:
            metrics.processed_records += result.output_count
        metrics.failed_records += result.error_count
        metrics.dropped_records += result.dropped_count
        if result.status == StepStatus.SUCCESS:
            metrics.steps_completed += 1
        elif result.status == StepStatus.ERROR:
            metrics.steps_failed += 1
        elif result.status == StepStatus.SKIPPED:
            metrics.steps_skipped += 1
    return metrics


class RunOrchestrator:
    """Executes plans. One instance serves many runs; per-run state lives in RunState.

    Example:
        orchestrator = RunOrchestrator(settings=settings, dead_letters=store)
        run = PipelineRun(id="run-1", pipeline_id="orders")
        orchestrator.execute(plan, run, hooks=dispatcher, options=RunOptions(seed_records=batch))
        assert run.status.is_terminal
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        *,
        settings: RuntimeSettings | None = None,
        spans: SpanFactory | None = None,
        dead_letters: DeadLetterStore | None = None,
        resources: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            executor: Step executor (built from settings when omitted)
            settings: Runtime settings
            spans: Span factory for tracing
            dead_letters: DeadLetterStore receiving final record errors
            resources: Shared resources handed to adapters (e.g. memory sinks)
        """
        self._settings = settings or RuntimeSettings()
        self._spans = spans or SpanFactory()
        self._executor = executor or StepExecutor(self._settings, self._spans)
        self._dead_letters = dead_letters
        self._resources = dict(resources or {})

    # === Public API ===

    def execute(
        self,
        plan: ExecutionPlan,
        run: PipelineRun,
        *,
        hooks: HookDispatcher,
        cancel: CancellationToken | None = None,
        options: RunOptions | None = None,
    ) -> PipelineRun:
        """Run a plan to a terminal state, mutating ``run`` as it progresses.

        Never raises for pipeline failures: the outcome is on ``run.status``
        and ``run.error``.
        """
        self._execute(plan, run, hooks, cancel or CancellationToken(), options or RunOptions())
        return run

    def replay(
        self,
        plan: ExecutionPlan,
        from_step: str,
        records: list[Record],
        run: PipelineRun,
        *,
        hooks: HookDispatcher,
        cancel: CancellationToken | None = None,
    ) -> PipelineRun:
        """Run ``from_step`` and everything downstream of it over ``records``.

        Failures of a replay are not dead-lettered again; the caller records
        them on the retry audit.

        Raises:
            KeyError: If the step is not in the plan
        """
        subplan = plan.subplan(from_step)
        options = RunOptions(entry_inputs={from_step: records}, capture_dead_letters=False)
        return self.execute(subplan, run, hooks=hooks, cancel=cancel, options=options)

    def dry_run(
        self,
        plan: ExecutionPlan,
        run: PipelineRun,
        *,
        hooks: HookDispatcher,
        seed_records: list[Record] | None = None,
        sample_size: int | None = None,
    ) -> DryRunResult:
        """Execute on a capped sample without invoking side-effecting loaders."""
        size = sample_size or self._settings.dry_run.sample_size
        seeds = list(seed_records[:size]) if seed_records is not None else None
        options = RunOptions(seed_records=seeds, dry_run=True, capture_dead_letters=False, input_cap=size)
        state = self._execute(plan, run, hooks, CancellationToken(), options)

        notes = [f"{w.code}: {w.message}" for w in plan.warnings]
        samples: list[DryRunSample] = []
        per_step = self._settings.dry_run.max_samples_per_step
        for key in plan.step_keys:
            result = state.results.get(key)
            if result is None:
                notes.append(f"Step '{key}' did not run")
                continue
            if key in state.capped:
                notes.append(f"Step '{key}' input capped to {size} of {state.capped[key]} records")
            if result.meta.get("simulated"):
                notes.append(f"Step '{key}' ({result.step_type.value}) simulated; side effects not executed")
            if result.status == StepStatus.SKIPPED:
                notes.append(f"Step '{key}' skipped ({result.meta.get('skipReason', 'condition')})")
            if result.failure is not None:
                notes.append(f"Step '{key}' failed: {result.failure.message}")
            before = state.inputs.get(key, [])
            after = result.output if result.branches is None else [r for b in result.branches.values() for r in b]
            for i in range(min(per_step, max(len(before), len(after)))):
                samples.append(
                    DryRunSample(
                        step_key=key,
                        before=before[i] if i < len(before) else None,
                        after=after[i] if i < len(after) else None,
                    )
                )
        return DryRunResult(metrics=run.metrics, step_results=dict(state.results), notes=notes, sample_records=samples)

    # === Internals ===

    def _execute(
        self,
        plan: ExecutionPlan,
        run: PipelineRun,
        hooks: HookDispatcher,
        cancel: CancellationToken,
        options: RunOptions,
    ) -> RunState:
        state = RunState()
        definition = plan.definition
        variables = {**definition.variables, **dict(options.variables or {})}
        ctx = StepRunContext(
            run_id=run.id,
            pipeline_id=run.pipeline_id,
            hooks=hooks,
            cancel=cancel,
            variables=variables,
            error_handling=definition.context.error_handling,
            idempotency_key_field=definition.context.idempotency_key_field,
            dead_letters=self._dead_letters,
            capture_dead_letters=options.capture_dead_letters,
            dry_run=options.dry_run,
            resources=self._resources,
        )
        lifecycle = {"pipelineCode": run.pipeline_id, "runId": run.id}

        run.status = RunStatus.RUNNING
        run.started_at = _now()
        started = time.perf_counter()
        with run_context(run_id=run.id, pipeline_id=run.pipeline_id), self._spans.run_span(run.id, run.pipeline_id):
            slog.info("run_started", steps=len(plan.steps), stages=len(plan.stages), dry_run=options.dry_run)
            hooks.fire(HookStage.PIPELINE_STARTED, dict(lifecycle), run_id=run.id)

            failure: PipelineError | None = None
            try:
                failure = self._run_stages(plan, state, ctx, options, variables)
            except Exception as e:
                # Defects in the engine itself end the run instead of leaking from a worker thread
                slog.exception("run_crashed", error=str(e))
                failure = to_pipeline_error(e, step_key=None, step_type=None)

            duration_ms = (time.perf_counter() - started) * 1000
            run.step_results = dict(state.results)
            run.metrics = aggregate_metrics(plan, state.results, duration_ms)
            incomplete = len(state.results) < len(plan.steps) or any(
                r.status == StepStatus.CANCELLED for r in state.results.values()
            )

            if failure is not None:
                run.status = RunStatus.ERROR
                run.error = ErrorSummary.from_error(failure)
            elif cancel.cancelled and incomplete:
                run.status = RunStatus.CANCELLED
                run.error = ErrorSummary.from_error(RunCancelledError(cancel.reason or "Run cancelled"))
            else:
                run.status = RunStatus.SUCCESS
            run.finished_at = _now()

            if run.status == RunStatus.SUCCESS:
                hooks.fire(
                    HookStage.PIPELINE_COMPLETED,
                    {**lifecycle, "recordsProcessed": run.metrics.processed_records, "duration": round(duration_ms, 3)},
                    run_id=run.id,
                )
            else:
                assert run.error is not None
                hooks.fire(HookStage.PIPELINE_FAILED, {**lifecycle, "error": run.error.message}, run_id=run.id)
            slog.info(
                "run_finished",
                status=run.status.value,
                processed=run.metrics.processed_records,
                failed=run.metrics.failed_records,
                duration_ms=round(duration_ms, 3),
            )
        return state

    def _run_stages(
        self,
        plan: ExecutionPlan,
        state: RunState,
        ctx: StepRunContext,
        options: RunOptions,
        variables: dict[str, Any],
    ) -> PipelineError | None:
        """Walk the stages; return the failure that stopped the run, if any."""
        limit = plan.definition.context.max_concurrent_steps or self._settings.execution.max_parallel_steps
        for index, stage in enumerate(plan.stages):
            if ctx.cancel.cancelled:
                slog.info("run_cancel_observed", stage=index, remaining_stages=len(plan.stages) - index)
                return None
            for key in stage:
                state.inputs[key] = self._inputs_for(plan.step(key), state, options, variables)

            if len(stage) == 1 or limit == 1:
                for key in stage:
                    state.results[key] = self._run_step(plan.step(key), state.inputs[key], ctx)
            else:
                with ThreadPoolExecutor(max_workers=min(limit, len(stage)), thread_name_prefix="hubflow-stage") as pool:
                    futures = {key: pool.submit(self._run_step, plan.step(key), state.inputs[key], ctx) for key in stage}
                    for key in stage:
                        state.results[key] = futures[key].result()

            for key in stage:
                result = state.results[key]
                if result.status == StepStatus.ERROR:
                    summary = result.failure
                    message = summary.message if summary is not None else f"Step '{key}' failed"
                    error = PipelineError(
                        message,
                        stage=summary.stage if summary is not None else ErrorStage.UNKNOWN,
                        step_key=key,
                        details=dict(summary.details) if summary is not None else {},
                    )
                    slog.warning("run_step_failed", step_key=key, error=message)
                    return error
        return None

    @staticmethod
    def _inputs_for(step: CompiledStep, state: RunState, options: RunOptions, variables: dict[str, Any]) -> list[Record]:
        if options.entry_inputs is not None and step.key in options.entry_inputs:
            records = copy.deepcopy(list(options.entry_inputs[step.key]))
        elif step.is_root:
            seeded = step.type in _ROOT_TYPES and options.seed_records is not None
            records = copy.deepcopy(list(options.seed_records)) if seeded and options.seed_records is not None else []
        else:
            records = collect_inputs(step, state.results, variables)
        if options.input_cap is not None and len(records) > options.input_cap:
            state.capped[step.key] = len(records)
            records = records[: options.input_cap]
        return records

    def _run_step(self, step: CompiledStep, records: list[Record], ctx: StepRunContext) -> StepResult:
        # Worker threads do not inherit the caller's structlog context
        with run_context(run_id=ctx.run_id, pipeline_id=ctx.pipeline_id):
            return self._executor.execute(step, records, ctx)
