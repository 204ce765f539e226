# src/hubflow/engine/throughput.py
"""ThroughputController: chunking, rate limiting and error-rate draining for one step.

One controller is created per step execution and shared by that step's
workers. It decides, chunk by chunk, whether a chunk may run now:

- Rate limit: admission blocks until the step's record budget allows the
  whole chunk (pyrate-limiter bucket, ``rateLimitRps`` records per second).
- Error window: outcomes are recorded in a sliding window of
  ``pauseOnErrorRate.intervalSec`` seconds. When the failed-record fraction
  in the window reaches the threshold, the drain strategy applies:

  BACKOFF  admission sleeps; the delay doubles on every throttled
           admission (capped) and resets once a window holds no errors.
  SHED     chunks are refused and counted as dropped until the window
           recovers. Chunks already in flight finish (FINISH) or have
           their output discarded (DROP).
  QUEUE    chunks are buffered instead of run, and the controller reports
           backpressure. Buffered chunks are released after a cool-down of
           one interval.
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from hubflow.contracts.definition import ThroughputConfig
from hubflow.contracts.enums import DrainStrategy, ShedPolicy
from hubflow.core.config import ThroughputSettings
from hubflow.core.rate_limit import NoOpLimiter, RecordRateLimiter
from hubflow.engine.cancellation import CancellationToken

slog = structlog.get_logger(__name__)

Chunk = list[dict[str, Any]]


class AdmissionKind(StrEnum):
    ADMIT = "admit"
    SHED = "shed"
    QUEUED = "queued"


@dataclass(frozen=True, slots=True)
class Admission:
    """Decision for one chunk.

    ``ticket`` identifies the shed generation at admission time; pass it to
    discard_inflight() when the chunk completes.
    """

    kind: AdmissionKind
    ticket: int = 0


@dataclass(frozen=True, slots=True)
class _Outcome:
    at: float
    processed: int
    failed: int


def split_chunks(records: list[dict[str, Any]], batch_size: int | None) -> list[Chunk]:
    """Split records into consecutive chunks; an empty input yields one empty chunk."""
    if not records:
        return [[]]
    if batch_size is None or batch_size >= len(records):
        return [list(records)]
    return [records[i : i + batch_size] for i in range(0, len(records), batch_size)]


class ThroughputController:
    """Per-step admission control. Thread-safe.

    Example:
        controller = ThroughputController("load", step.throughput, settings.throughput)
        for index, chunk in enumerate(controller.chunk(records)):
            admission = controller.admit(index, chunk)
            if admission.kind is AdmissionKind.ADMIT:
                result = run(chunk)
                controller.record_outcome(len(chunk), failed=len(result.errors))
        controller.close()
    """

    def __init__(
        self,
        step_key: str,
        config: ThroughputConfig | None,
        settings: ThroughputSettings | None = None,
        *,
        default_concurrency: int | None = None,
        cancel: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.step_key = step_key
        self._config = config or ThroughputConfig()
        self._settings = settings or ThroughputSettings()
        self._default_concurrency = default_concurrency
        self._cancel = cancel
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        if self._config.rate_limit_rps is not None:
            self._limiter: RecordRateLimiter | NoOpLimiter = RecordRateLimiter(
                "step_" + re.sub(r"[^A-Za-z0-9_]", "_", step_key), records_per_second=self._config.rate_limit_rps
            )
        else:
            self._limiter = NoOpLimiter()

        self._window: deque[_Outcome] = deque()
        self._backoff_ms = 0.0
        self._shed_generation = 0
        self._shedding = False
        self._queue: deque[tuple[int, Chunk]] = deque()

        # Statistics
        self._admitted_chunks = 0
        self._admitted_records = 0
        self._shed_chunks = 0
        self._shed_records = 0
        self._queued_chunks = 0
        self._released_chunks = 0
        self._discarded_records = 0
        self._backoff_events = 0
        self._peak_backoff_ms = 0.0
        self._total_wait_ms = 0.0

    # === Configuration ===

    @property
    def config(self) -> ThroughputConfig:
        return self._config

    @property
    def batch_size(self) -> int | None:
        return self._config.batch_size

    @property
    def concurrency(self) -> int:
        return self._config.concurrency or self._default_concurrency or 1

    @property
    def drain_strategy(self) -> DrainStrategy:
        return self._config.drain_strategy

    def chunk(self, records: list[dict[str, Any]]) -> list[Chunk]:
        return split_chunks(records, self._config.batch_size)

    # === Error window ===

    def _prune(self, now: float) -> None:
        pause = self._config.pause_on_error_rate
        if pause is None:
            self._window.clear()
            return
        horizon = now - pause.interval_sec
        while self._window and self._window[0].at < horizon:
            self._window.popleft()

    def _window_totals(self) -> tuple[int, int]:
        processed = sum(o.processed for o in self._window)
        failed = sum(o.failed for o in self._window)
        return processed, failed

    def _over_threshold(self) -> bool:
        pause = self._config.pause_on_error_rate
        if pause is None:
            return False
        processed, failed = self._window_totals()
        if processed == 0:
            return False
        return failed / processed >= pause.threshold

    @property
    def error_rate(self) -> float:
        """Failed-record fraction in the current window."""
        with self._lock:
            self._prune(self._clock())
            processed, failed = self._window_totals()
        return failed / processed if processed else 0.0

    def record_outcome(self, processed: int, failed: int) -> None:
        """Record a finished chunk's record counts in the error window."""
        if self._config.pause_on_error_rate is None:
            return
        with self._lock:
            now = self._clock()
            self._window.append(_Outcome(at=now, processed=processed, failed=failed))
            self._prune(now)
            over = self._over_threshold()
            if over and self.drain_strategy == DrainStrategy.SHED and not self._shedding:
                self._shedding = True
                self._shed_generation += 1
                slog.warning("throughput_shed_engaged", step_key=self.step_key, policy=self._config.shed_policy.value)
            if not over and self._shedding:
                self._shedding = False
                slog.info("throughput_shed_released", step_key=self.step_key)

    # === Admission ===

    def _wait(self, seconds: float) -> None:
        started = self._clock()
        if self._sleep is not None:
            self._sleep(seconds)
        elif self._cancel is not None:
            self._cancel.wait(seconds)
        else:
            time.sleep(seconds)
        with self._lock:
            self._total_wait_ms += (self._clock() - started) * 1000

    def _next_backoff_ms(self) -> float:
        """Advance the exponential BACKOFF delay (caller holds the lock)."""
        if self._backoff_ms == 0:
            self._backoff_ms = float(self._settings.backoff_base_ms)
        else:
            self._backoff_ms *= self._settings.backoff_multiplier
        if self._backoff_ms > self._settings.backoff_max_ms:
            self._backoff_ms = float(self._settings.backoff_max_ms)
        self._backoff_events += 1
        self._peak_backoff_ms = max(self._peak_backoff_ms, self._backoff_ms)
        return self._backoff_ms

    def admit(self, index: int, chunk: Chunk) -> Admission:
        """Decide whether ``chunk`` may run now, blocking for backoff and rate limit."""
        delay_ms = 0.0
        with self._lock:
            self._prune(self._clock())
            over = self._over_threshold()
            if not over and self._shedding:
                self._shedding = False
            strategy = self.drain_strategy

            if over and strategy == DrainStrategy.SHED:
                self._shedding = True
                self._shed_chunks += 1
                self._shed_records += len(chunk)
                return Admission(AdmissionKind.SHED, self._shed_generation)

            if over and strategy == DrainStrategy.QUEUE:
                if len(self._queue) >= self._settings.queue_max_chunks:
                    self._shed_chunks += 1
                    self._shed_records += len(chunk)
                    slog.warning("throughput_queue_full", step_key=self.step_key, queued=len(self._queue))
                    return Admission(AdmissionKind.SHED, self._shed_generation)
                self._queue.append((index, chunk))
                self._queued_chunks += 1
                return Admission(AdmissionKind.QUEUED, self._shed_generation)

            if over and strategy == DrainStrategy.BACKOFF:
                delay_ms = self._next_backoff_ms()
            elif not self._window_totals()[1]:
                self._backoff_ms = 0.0
            ticket = self._shed_generation

        if delay_ms > 0:
            slog.debug("throughput_backoff", step_key=self.step_key, delay_ms=delay_ms)
            self._wait(delay_ms / 1000)

        started = self._clock()
        self._limiter.acquire(len(chunk))
        with self._lock:
            self._total_wait_ms += (self._clock() - started) * 1000
            self._admitted_chunks += 1
            self._admitted_records += len(chunk)
        return Admission(AdmissionKind.ADMIT, ticket)

    def discard_inflight(self, ticket: int) -> bool:
        """Whether an in-flight chunk's output must be dropped.

        True only under SHED with the DROP policy, when shedding engaged
        after the chunk was admitted. Call before record_outcome() for the
        same chunk.
        """
        if self._config.shed_policy != ShedPolicy.DROP:
            return False
        with self._lock:
            return self._shedding and self._shed_generation > ticket

    def note_discarded(self, records: int) -> None:
        with self._lock:
            self._discarded_records += records

    # === Queue ===

    @property
    def queued(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_backpressured(self) -> bool:
        """True while chunks are buffered by the QUEUE strategy."""
        with self._lock:
            return bool(self._queue)

    def release_queued(self) -> list[tuple[int, Chunk]]:
        """Wait one interval for the window to cool down, then hand back buffered chunks.

        Released chunks are admitted without further queuing (rate limit
        still applies), in their original order.
        """
        if not self.is_backpressured:
            return []
        pause = self._config.pause_on_error_rate
        cool_down = pause.interval_sec if pause is not None else 0.0
        slog.info("throughput_queue_cooldown", step_key=self.step_key, queued=self.queued, seconds=cool_down)
        self._wait(cool_down)
        with self._lock:
            released = sorted(self._queue, key=lambda item: item[0])
            self._queue.clear()
            self._released_chunks += len(released)
        for _, chunk in released:
            started = self._clock()
            self._limiter.acquire(len(chunk))
            with self._lock:
                self._total_wait_ms += (self._clock() - started) * 1000
                self._admitted_chunks += 1
                self._admitted_records += len(chunk)
        return released

    # === Lifecycle ===

    def get_stats(self) -> dict[str, float | int]:
        """Admission statistics reported in the step result's meta."""
        with self._lock:
            return {
                "admitted_chunks": self._admitted_chunks,
                "admitted_records": self._admitted_records,
                "shed_chunks": self._shed_chunks,
                "shed_records": self._shed_records,
                "queued_chunks": self._queued_chunks,
                "released_chunks": self._released_chunks,
                "discarded_records": self._discarded_records,
                "backoff_events": self._backoff_events,
                "peak_backoff_ms": self._peak_backoff_ms,
                "total_wait_ms": round(self._total_wait_ms, 3),
            }

    def close(self) -> None:
        self._limiter.close()
