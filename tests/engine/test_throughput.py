# tests/engine/test_throughput.py
"""Tests for ThroughputController admission, drain strategies and chunking.

A fake clock drives the error window; sleeps are recorded, not taken.
Rate limit tests use the real pyrate-limiter bucket and wall clock.
"""

from __future__ import annotations

import threading
import time
from bisect import bisect_right
from concurrent.futures import ThreadPoolExecutor

import pytest

from hubflow.contracts.definition import ThroughputConfig
from hubflow.core.config import ThroughputSettings
from hubflow.engine.throughput import AdmissionKind, ThroughputController, split_chunks


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _config(strategy: str = "BACKOFF", policy: str = "FINISH", **extra: object) -> ThroughputConfig:
    return ThroughputConfig.model_validate(
        {"pauseOnErrorRate": {"threshold": 0.5, "intervalSec": 60}, "drainStrategy": strategy, "shedPolicy": policy, **extra}
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


def _controller(config: ThroughputConfig | None, clock: FakeClock, sleeps: list[float], **settings: int) -> ThroughputController:
    return ThroughputController(
        "load", config, ThroughputSettings(**settings), clock=clock, sleep=sleeps.append
    )


class TestChunking:
    def test_split(self) -> None:
        records = [{"i": i} for i in range(5)]

        assert split_chunks(records, 2) == [records[0:2], records[2:4], records[4:5]]
        assert split_chunks(records, None) == [records]
        assert split_chunks(records, 10) == [records]
        assert split_chunks([], 3) == [[]]

    def test_concurrency_fallbacks(self) -> None:
        assert ThroughputController("a", ThroughputConfig(concurrency=3)).concurrency == 3
        assert ThroughputController("a", None, default_concurrency=2).concurrency == 2
        assert ThroughputController("a", None).concurrency == 1


class TestWithoutErrorWindow:
    def test_always_admits(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(None, clock, sleeps)
        controller.record_outcome(10, 10)

        assert controller.admit(0, [{}]).kind is AdmissionKind.ADMIT
        assert controller.error_rate == 0.0
        assert sleeps == []


class TestBackoff:
    def test_delays_grow_and_cap(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config(), clock, sleeps, backoff_base_ms=100, backoff_max_ms=300)
        controller.record_outcome(2, 2)

        for index in range(4):
            assert controller.admit(index, [{}]).kind is AdmissionKind.ADMIT

        assert sleeps == pytest.approx([0.1, 0.2, 0.3, 0.3])
        assert controller.get_stats()["backoff_events"] == 4
        assert controller.get_stats()["peak_backoff_ms"] == 300

    def test_threshold_is_inclusive(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config(), clock, sleeps, backoff_base_ms=100)
        controller.record_outcome(4, 2)

        controller.admit(0, [{}])

        assert sleeps == pytest.approx([0.1])

    def test_below_threshold_no_delay(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config(), clock, sleeps)
        controller.record_outcome(10, 4)

        controller.admit(0, [{}])

        assert sleeps == []
        assert controller.error_rate == pytest.approx(0.4)

    def test_reset_after_clean_window(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config(), clock, sleeps, backoff_base_ms=100, backoff_max_ms=1000)
        controller.record_outcome(2, 2)
        controller.admit(0, [{}])
        controller.admit(1, [{}])

        clock.advance(61)
        controller.admit(2, [{}])
        controller.record_outcome(2, 2)
        controller.admit(3, [{}])

        assert sleeps == pytest.approx([0.1, 0.2, 0.1])


class TestShed:
    def test_drop_policy_discards_inflight_output(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("SHED", "DROP"), clock, sleeps)
        in_flight = controller.admit(0, [{}, {}])

        controller.record_outcome(2, 2)

        assert controller.discard_inflight(in_flight.ticket) is True
        assert controller.admit(1, [{}, {}, {}]).kind is AdmissionKind.SHED
        assert controller.get_stats()["shed_records"] == 3

    def test_finish_policy_keeps_inflight_output(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("SHED", "FINISH"), clock, sleeps)
        in_flight = controller.admit(0, [{}])

        controller.record_outcome(1, 1)

        assert controller.discard_inflight(in_flight.ticket) is False
        assert controller.admit(1, [{}]).kind is AdmissionKind.SHED

    def test_recovers_when_window_clears(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("SHED", "DROP"), clock, sleeps)
        controller.record_outcome(1, 1)
        assert controller.admit(0, [{}]).kind is AdmissionKind.SHED

        clock.advance(61)
        admission = controller.admit(1, [{}])

        assert admission.kind is AdmissionKind.ADMIT
        assert controller.discard_inflight(admission.ticket) is False


class TestQueue:
    def test_buffers_then_releases_in_order(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("QUEUE"), clock, sleeps)
        controller.record_outcome(1, 1)

        assert controller.admit(2, [{"i": 2}]).kind is AdmissionKind.QUEUED
        assert controller.admit(1, [{"i": 1}]).kind is AdmissionKind.QUEUED
        assert controller.is_backpressured
        assert controller.queued == 2

        released = controller.release_queued()

        assert released == [(1, [{"i": 1}]), (2, [{"i": 2}])]
        assert sleeps == [60]
        assert not controller.is_backpressured
        assert controller.get_stats()["released_chunks"] == 2

    def test_release_without_queue_is_noop(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("QUEUE"), clock, sleeps)
        assert controller.release_queued() == []
        assert sleeps == []

    def test_full_queue_sheds(self, clock: FakeClock, sleeps: list[float]) -> None:
        controller = _controller(_config("QUEUE"), clock, sleeps, queue_max_chunks=1)
        controller.record_outcome(1, 1)

        assert controller.admit(0, [{}]).kind is AdmissionKind.QUEUED
        assert controller.admit(1, [{}]).kind is AdmissionKind.SHED


class TestRateLimit:
    def test_any_two_second_window_stays_within_bound(self, monkeypatch: pytest.MonkeyPatch) -> None:
        rps, batch = 10, 5
        controller = ThroughputController(
            "load", ThroughputConfig.model_validate({"rateLimitRps": rps, "batchSize": batch, "concurrency": 2})
        )
        # Timestamp every token as it is granted, across both workers
        inner = controller._limiter._limiter  # type: ignore[union-attr]
        grant = inner.try_acquire
        stamps: list[float] = []
        stamps_lock = threading.Lock()

        def timed(name: str, weight: int = 1) -> object:
            granted = grant(name, weight)
            with stamps_lock:
                stamps.append(time.monotonic())
            return granted

        monkeypatch.setattr(inner, "try_acquire", timed)
        chunks = controller.chunk([{"i": i} for i in range(35)])

        try:
            with ThreadPoolExecutor(max_workers=controller.concurrency) as pool:
                admissions = list(pool.map(controller.admit, range(len(chunks)), chunks))
        finally:
            controller.close()

        assert all(a.kind is AdmissionKind.ADMIT for a in admissions)
        assert controller.get_stats()["admitted_records"] == 35
        assert len(stamps) == 35
        stamps.sort()
        worst = max(bisect_right(stamps, start + 2.0) - i for i, start in enumerate(stamps))
        assert worst <= 2 * rps + batch
        # 35 records at 10/s cannot all pass in under ~3.4s
        assert stamps[-1] - stamps[0] >= 2.5
