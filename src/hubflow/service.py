# src/hubflow/service.py
"""PipelineService: the operations a transport layer (API, CLI, webhook server) calls.

Owns the long-lived collaborators of a runtime instance: adapter registry,
compiler, hook dispatcher, dead-letter store, orchestrator, consumers and
the webhook handler. Runs execute on a worker pool; start_run() returns
immediately with a PENDING run.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from hubflow.contracts.definition import PipelineDefinition
from hubflow.contracts.enums import DeadLetterStatus, HookStage, RunStatus, ValidationLevel
from hubflow.contracts.errors import (
    ErrorSummary,
    PipelineNotFoundError,
    RunCancelledError,
    RunNotFoundError,
)
from hubflow.contracts.results import (
    ConsumerStatus,
    DryRunResult,
    PipelineQueueStats,
    PipelineRun,
    QueueStats,
    Record,
    ValidationReport,
)
from hubflow.core.config import RuntimeSettings, load_settings
from hubflow.core.dead_letter import DeadLetterDB, DeadLetterStore, RecordErrorEntry, RetryAudit
from hubflow.core.logging import configure_logging
from hubflow.engine.cancellation import CancellationToken
from hubflow.engine.compiler import ExecutionPlan, PipelineCompiler
from hubflow.engine.consumer import ConsumerManager, MessageSource
from hubflow.engine.executors import StepExecutor
from hubflow.engine.hooks import HookDelivery, HookDispatcher, hook_catalog
from hubflow.engine.orchestrator import RunOptions, RunOrchestrator
from hubflow.engine.spans import SpanFactory
from hubflow.plugins.adapters.sink import MEMORY_SINKS_RESOURCE, MemorySinkStore
from hubflow.plugins.manager import AdapterPluginManager, AdapterRegistry
from hubflow.triggers.webhook import EnvSecretResolver, SecretResolver, WebhookAuthenticator, WebhookHandler, WebhookRequest

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

slog = structlog.get_logger(__name__)


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:16]}"


@dataclass
class _RunHandle:
    run: PipelineRun
    cancel: CancellationToken
    future: Future[PipelineRun] | None = None
    done: threading.Event = field(default_factory=threading.Event)


class PipelineService:
    """Facade over the runtime.

    Example:
        with PipelineService() as service:
            service.register_pipeline("orders", definition)
            run = service.start_run("orders")
            run = service.wait_for_run(run.id, timeout=30)
            for error in service.record_errors(pipeline_id="orders"):
                service.retry_record(error.error_id, {"quantity": 1}, actor="ops")
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        plugin_manager: AdapterPluginManager | None = None,
        dead_letters: DeadLetterStore | None = None,
        secrets: SecretResolver | None = None,
        tracer: Tracer | None = None,
        source_factory: Callable[[str], MessageSource] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            settings: Runtime settings (defaults when omitted)
            plugin_manager: Plugin manager with adapters and hook listeners
                registered; builtin adapters only when omitted
            dead_letters: Record error store (settings.dead_letter.url when omitted)
            secrets: Webhook secret resolver (environment variables when omitted)
            tracer: OpenTelemetry tracer; no spans when omitted
            source_factory: Message sources for consumers (in-memory when omitted)
            sleep: Replaces cancellable waits in steps; for tests
        """
        self._settings = settings or RuntimeSettings()
        if plugin_manager is None:
            plugin_manager = AdapterPluginManager()
            plugin_manager.register_builtin_adapters()
        self._plugins = plugin_manager
        self._registry = plugin_manager.build_registry()
        self._compiler = PipelineCompiler(self._registry)
        self._hooks = HookDispatcher(plugin_manager.pluggy_manager)

        self._owns_store = dead_letters is None
        self._store = dead_letters or DeadLetterStore(DeadLetterDB(self._settings.dead_letter.url))
        self._sinks = MemorySinkStore()
        spans = SpanFactory(tracer)
        self._orchestrator = RunOrchestrator(
            StepExecutor(self._settings, spans, sleep=sleep),
            settings=self._settings,
            spans=spans,
            dead_letters=self._store,
            resources={MEMORY_SINKS_RESOURCE: self._sinks},
        )
        self._pool = ThreadPoolExecutor(max_workers=self._settings.execution.run_workers, thread_name_prefix="hubflow-run")
        self._consumers = ConsumerManager(self.run_seeded, settings=self._settings.consumer, source_factory=source_factory)
        self._webhooks = WebhookHandler(WebhookAuthenticator(secrets or EnvSecretResolver()))

        self._pipelines: dict[str, PipelineDefinition] = {}
        self._plans: dict[str, ExecutionPlan] = {}
        self._runs: dict[str, _RunHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config_path: Path | None = None, **kwargs: Any) -> PipelineService:
        """Load settings (file plus HUBFLOW_* overrides), configure logging, build the service.

        Keyword arguments are passed to the constructor.
        """
        settings = load_settings(config_path)
        configure_logging(settings.logging)
        slog.info("runtime_configured", config_path=str(config_path) if config_path else None, run_workers=settings.execution.run_workers)
        return cls(settings, **kwargs)

    # === Collaborators ===

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    @property
    def hooks(self) -> HookDispatcher:
        return self._hooks

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self._store

    @property
    def sinks(self) -> MemorySinkStore:
        return self._sinks

    @property
    def consumers(self) -> ConsumerManager:
        return self._consumers

    # === Pipelines ===

    def register_pipeline(self, code: str, definition: PipelineDefinition | Mapping[str, Any]) -> PipelineDefinition:
        """Store (or replace) a pipeline definition under ``code``.

        Compilation happens when a run starts, so invalid definitions can be
        stored and fixed later.
        """
        if not isinstance(definition, PipelineDefinition):
            definition = PipelineDefinition.model_validate(definition)
        with self._lock:
            self._pipelines[code] = definition
            self._plans.pop(code, None)
        slog.info("pipeline_registered", pipeline_code=code, steps=len(definition.nodes))
        return definition

    def get_pipeline(self, code: str) -> PipelineDefinition:
        with self._lock:
            try:
                return self._pipelines[code]
            except KeyError:
                raise PipelineNotFoundError(f"Pipeline not found: {code}") from None

    def pipeline_codes(self) -> list[str]:
        with self._lock:
            return sorted(self._pipelines)

    def _plan(self, code: str) -> ExecutionPlan:
        """Compiled plan of a registered pipeline.

        Raises:
            PipelineNotFoundError: If the code is unknown
            CompileError: If the definition does not compile
        """
        definition = self.get_pipeline(code)
        with self._lock:
            plan = self._plans.get(code)
        if plan is None or plan.definition is not definition:
            plan = self._compiler.compile(definition)
            with self._lock:
                self._plans[code] = plan
        return plan

    def validate(self, definition: PipelineDefinition | Mapping[str, Any], level: ValidationLevel | str = ValidationLevel.WARN) -> ValidationReport:
        """Report every problem of a definition without compiling it into a plan."""
        if not isinstance(definition, PipelineDefinition):
            definition = PipelineDefinition.model_validate(definition)
        return self._compiler.validate(definition, ValidationLevel(str(level).lower()))

    # === Runs ===

    def start_run(
        self,
        pipeline_code: str,
        *,
        seed_records: list[Record] | None = None,
        triggered_by: str = "manual",
        variables: Mapping[str, Any] | None = None,
    ) -> PipelineRun:
        """Submit a run; returns it in PENDING state.

        Raises:
            PipelineNotFoundError: If the code is unknown
            CompileError: If the definition does not compile
        """
        plan = self._plan(pipeline_code)
        handle = self._new_handle(pipeline_code, triggered_by)
        options = RunOptions(seed_records=seed_records, variables=variables)
        handle.future = self._pool.submit(self._execute, plan, handle, options)
        slog.info("run_submitted", run_id=handle.run.id, pipeline_code=pipeline_code, triggered_by=triggered_by)
        return handle.run

    def run_seeded(self, pipeline_code: str, records: list[Record]) -> PipelineRun:
        """Execute a run seeded with ``records`` on the calling thread (consumers)."""
        plan = self._plan(pipeline_code)
        handle = self._new_handle(pipeline_code, "consumer")
        return self._execute(plan, handle, RunOptions(seed_records=records))

    def _new_handle(self, pipeline_code: str, triggered_by: str) -> _RunHandle:
        handle = _RunHandle(run=PipelineRun(id=_new_run_id(), pipeline_id=pipeline_code, triggered_by=triggered_by), cancel=CancellationToken())
        self.prune_runs()
        with self._lock:
            self._runs[handle.run.id] = handle
        return handle

    def prune_runs(self, now: datetime | None = None) -> int:
        """Forget finished runs older than ``execution.run_retention_seconds``.

        Called whenever a run is created, so consumers starting one run per
        message do not grow the run table without bound.

        Returns:
            Number of runs forgotten
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=self._settings.execution.run_retention_seconds)
        with self._lock:
            expired = [
                run_id
                for run_id, handle in self._runs.items()
                if handle.done.is_set() and handle.run.finished_at is not None and handle.run.finished_at <= cutoff
            ]
            for run_id in expired:
                del self._runs[run_id]
        if expired:
            slog.debug("runs_pruned", count=len(expired))
        return len(expired)

    def _execute(self, plan: ExecutionPlan, handle: _RunHandle, options: RunOptions) -> PipelineRun:
        try:
            hooks = self._hooks.bind(plan.definition.hooks)
            return self._orchestrator.execute(plan, handle.run, hooks=hooks, cancel=handle.cancel, options=options)
        finally:
            handle.done.set()

    def _handle(self, run_id: str) -> _RunHandle:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFoundError(f"Run not found: {run_id}") from None

    def get_run(self, run_id: str) -> PipelineRun:
        return self._handle(run_id).run

    def runs(self, pipeline_code: str | None = None) -> list[PipelineRun]:
        with self._lock:
            return [h.run for h in self._runs.values() if pipeline_code is None or h.run.pipeline_id == pipeline_code]

    def wait_for_run(self, run_id: str, timeout: float | None = None) -> PipelineRun:
        """Block until the run is terminal.

        Raises:
            RunNotFoundError: If the run is unknown
            TimeoutError: If the run is still going after ``timeout`` seconds
        """
        handle = self._handle(run_id)
        if not handle.done.wait(timeout):
            raise TimeoutError(f"Run {run_id} did not finish within {timeout}s")
        return handle.run

    def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> PipelineRun:
        """Request cancellation; a run that has not started yet is cancelled at once.

        In-flight steps stop admitting chunks and finish the chunks they
        hold. Terminal runs are returned unchanged.
        """
        handle = self._handle(run_id)
        if handle.run.status.is_terminal:
            return handle.run
        handle.cancel.cancel(reason)
        if handle.future is not None and handle.future.cancel():
            handle.run.status = RunStatus.CANCELLED
            handle.run.finished_at = datetime.now(UTC)
            handle.run.error = ErrorSummary.from_error(RunCancelledError(reason))
            handle.done.set()
        slog.info("run_cancel_requested", run_id=run_id, status=handle.run.status.value)
        return handle.run

    def dry_run(
        self,
        pipeline_code: str,
        *,
        sample_size: int | None = None,
        seed_records: list[Record] | None = None,
    ) -> DryRunResult:
        """Execute on a capped sample; side-effecting loaders are not invoked and nothing is dead-lettered."""
        plan = self._plan(pipeline_code)
        run = PipelineRun(id=f"dry-{uuid.uuid4().hex[:16]}", pipeline_id=pipeline_code, triggered_by="dry-run")
        return self._orchestrator.dry_run(
            plan,
            run,
            hooks=self._hooks.bind(plan.definition.hooks),
            seed_records=seed_records,
            sample_size=sample_size,
        )

    # === Record errors ===

    def record_errors(
        self,
        *,
        pipeline_id: str | None = None,
        status: DeadLetterStatus | None = None,
        run_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RecordErrorEntry]:
        return self._store.list_entries(pipeline_id=pipeline_id, status=status, run_id=run_id, limit=limit, offset=offset)

    def retry_audits(self, error_id: str) -> list[RetryAudit]:
        return self._store.audits(error_id)

    def retry_record(self, error_id: str, patch: dict[str, Any] | None = None, *, actor: str = "system") -> bool:
        """Resubmit a captured record, optionally patched, from the step that failed it.

        The stored payload is never changed: every retry submits the
        original payload merged with ``patch``, and is audited. RESOLVED
        entries can be replayed again; only entries marked DEAD are refused.

        Returns:
            True if the record passed its step and everything downstream;
            False if it failed again or the entry is marked DEAD

        Raises:
            RecordErrorNotFoundError: If no entry has this ID
            InvalidPatchError: If the patch is not a JSON object
        """
        with self._store.locked(error_id):
            entry = self._store.get(error_id)
            if entry.status == DeadLetterStatus.DEAD:
                slog.info("record_retry_refused", error_id=error_id, status=entry.status.value)
                return False
            resulting = self._store.resulting_payload(error_id, patch)
            plan = self._plan(entry.pipeline_id)
            handle = self._new_handle(entry.pipeline_id, f"retry:{error_id}")

            if entry.step_key not in plan.steps:
                message = f"Step '{entry.step_key}' no longer exists in pipeline '{entry.pipeline_id}'"
                handle.run.status = RunStatus.ERROR
                handle.run.finished_at = datetime.now(UTC)
                handle.done.set()
                self._store.record_retry(error_id, patch, resulting, actor=actor, succeeded=False, message=message)
                return False

            try:
                run = self._orchestrator.replay(
                    plan,
                    entry.step_key,
                    [resulting],
                    handle.run,
                    hooks=self._hooks.bind(plan.definition.hooks),
                    cancel=handle.cancel,
                )
            finally:
                handle.done.set()
            succeeded = run.status == RunStatus.SUCCESS and run.metrics.failed_records == 0
            message = None
            if not succeeded:
                if run.error is not None:
                    message = run.error.message
                else:
                    errors = [e.message for r in run.step_results.values() for e in r.errors]
                    message = errors[0] if errors else run.status.value
            self._store.record_retry(error_id, patch, resulting, actor=actor, succeeded=succeeded, message=message, run_id=run.id)
        return succeeded

    def mark_dead_letter(self, error_id: str, dead_letter: bool) -> bool:
        """Exclude a record error from reprocessing, or lift the exclusion.

        Raises:
            RecordErrorNotFoundError: If no entry has this ID
        """
        return self._store.mark_dead(error_id, dead_letter)

    # === Consumers and queue ===

    def start_consumer(self, pipeline_code: str) -> ConsumerStatus:
        """Start consuming for a pipeline. No-op when already active.

        Raises:
            PipelineNotFoundError: If the code is unknown
            CompileError: If the definition does not compile
        """
        self._plan(pipeline_code)
        return self._consumers.start(pipeline_code)

    def stop_consumer(self, pipeline_code: str) -> ConsumerStatus:
        """Drain and stop a pipeline's consumer. No-op when inactive."""
        return self._consumers.stop(pipeline_code)

    def consumer_status(self, pipeline_code: str) -> ConsumerStatus | None:
        return self._consumers.status(pipeline_code)

    def queue_stats(self) -> QueueStats:
        """Run counts by state, overall and per pipeline.

        pending includes messages waiting in consumer sources; completedToday
        counts runs that succeeded since midnight UTC.
        """
        today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._lock:
            runs = [h.run for h in self._runs.values()]
            codes = set(self._pipelines)
        counts: dict[str, dict[str, int]] = {}
        for run in runs:
            bucket = counts.setdefault(run.pipeline_id, {"pending": 0, "running": 0, "failed": 0, "completed_today": 0})
            if run.status == RunStatus.PENDING:
                bucket["pending"] += 1
            elif run.status == RunStatus.RUNNING:
                bucket["running"] += 1
            elif run.status == RunStatus.ERROR:
                bucket["failed"] += 1
            elif run.status == RunStatus.SUCCESS and run.finished_at is not None and run.finished_at >= today:
                bucket["completed_today"] += 1
        for code in codes:
            waiting = self._consumers.pending(code)
            if waiting:
                counts.setdefault(code, {"pending": 0, "running": 0, "failed": 0, "completed_today": 0})["pending"] += waiting

        by_pipeline = {code: PipelineQueueStats(**values) for code, values in sorted(counts.items())}
        return QueueStats(
            pending=sum(s.pending for s in by_pipeline.values()),
            running=sum(s.running for s in by_pipeline.values()),
            failed=sum(s.failed for s in by_pipeline.values()),
            completed_today=sum(s.completed_today for s in by_pipeline.values()),
            dead_letters=sum(self._store.count_dead_letters_by_pipeline().values()),
            by_pipeline=by_pipeline,
        )

    def resolved_record_errors(self, since: timedelta = timedelta(days=1)) -> int:
        return self._store.resolved_since(since)

    # === Hooks ===

    def hook_catalog(self) -> list[dict[str, Any]]:
        return hook_catalog()

    def test_hook(self, stage: HookStage | str, payload: dict[str, Any] | None = None) -> HookDelivery:
        """Fire a hook stage with its example payload (or ``payload``) to check listeners."""
        return self._hooks.test_hook(HookStage(stage), payload)

    # === Webhooks ===

    def handle_webhook(self, pipeline_code: str, request: WebhookRequest) -> PipelineRun:
        """Authenticate a webhook call and start a run seeded with its records.

        Raises:
            PipelineNotFoundError: If the code is unknown
            WebhookAuthenticationError: If the request is refused
        """
        definition = self.get_pipeline(pipeline_code)
        acceptance = self._webhooks.accept(pipeline_code, definition.webhook_triggers(), request)
        return self.start_run(pipeline_code, seed_records=acceptance.records, triggered_by=acceptance.triggered_by)

    # === Lifecycle ===

    def close(self) -> None:
        """Stop consumers, cancel unfinished runs and release resources."""
        self._consumers.close()
        with self._lock:
            handles = list(self._runs.values())
        for handle in handles:
            if not handle.run.status.is_terminal:
                handle.cancel.cancel("Service shutting down")
        self._pool.shutdown(wait=True, cancel_futures=True)
        self._webhooks.close()
        if self._owns_store:
            self._store.close()

    def __enter__(self) -> PipelineService:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
