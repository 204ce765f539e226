# src/hubflow/core/rate_limit/limiter.py
"""Rate limiter wrapper around pyrate-limiter."""

from __future__ import annotations

import math
import re
import threading
from typing import TYPE_CHECKING

import structlog
from pyrate_limiter import (  # type: ignore[attr-defined]
    Duration,
    InMemoryBucket,
    Limiter,
    Rate,
)

if TYPE_CHECKING:
    from types import TracebackType

# Bucket keys are derived from step keys
_VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.:-]*$")

_original_excepthook = threading.excepthook

# Leaker threads registered for exception suppression during close().
# Tracked by ident, not name, so unrelated threads are never affected.
_suppressed_thread_idents: set[int] = set()
_suppressed_lock = threading.Lock()


def _custom_excepthook(args: threading.ExceptHookArgs) -> None:
    """Suppress the benign AssertionError pyrate-limiter's Leaker raises on dispose.

    Only threads registered by RecordRateLimiter.close() are affected, once.
    """
    thread_ident = args.thread.ident if args.thread else None

    with _suppressed_lock:
        if thread_ident is not None and thread_ident in _suppressed_thread_idents and args.exc_type is AssertionError:
            _suppressed_thread_idents.discard(thread_ident)
            structlog.get_logger(__name__).debug(
                "Suppressed expected pyrate-limiter cleanup exception",
                thread_ident=thread_ident,
            )
            return

    _original_excepthook(args)


threading.excepthook = _custom_excepthook


def rate_for(records_per_second: float) -> Rate:
    """Translate a (possibly fractional) records-per-second limit into a Rate.

    pyrate-limiter rates are integer counts per millisecond interval. The
    count is kept small so admission is smooth rather than bursty, and the
    interval is rounded up so the effective rate never exceeds the limit.
    """
    limit = max(1, math.ceil(records_per_second / 100))
    interval_ms = max(1, math.ceil(1000 * limit / records_per_second))
    return Rate(limit, interval_ms)


class RecordRateLimiter:
    """Blocking per-record rate limiter shared by one step's workers.

    Example:
        with RecordRateLimiter("load_products", records_per_second=10) as limiter:
            limiter.acquire(len(chunk))
            adapter.execute(chunk, ctx)
    """

    def __init__(self, name: str, records_per_second: float) -> None:
        """Initialize rate limiter.

        Args:
            name: Bucket key. Must start with a letter.
            records_per_second: Maximum records admitted per second. Must be > 0.

        Raises:
            ValueError: If name is invalid or the rate is not positive.
        """
        if not _VALID_NAME_PATTERN.match(name):
            msg = f"Invalid rate limiter name: {name!r}. Name must start with a letter."
            raise ValueError(msg)
        if records_per_second <= 0:
            msg = f"records_per_second must be positive, got {records_per_second}"
            raise ValueError(msg)

        self.name = name
        self.records_per_second = records_per_second
        self.rate = rate_for(records_per_second)
        self._bucket = InMemoryBucket(rates=[self.rate])
        # Never give up waiting for a token; at worst one interval plus slack
        max_delay = max(Duration.MINUTE.value, int(self.rate.interval) + 1000)
        self._limiter = Limiter(self._bucket, max_delay=max_delay, raise_when_fail=True)

    def acquire(self, records: int = 1) -> None:
        """Block until ``records`` tokens have been admitted."""
        for _ in range(records):
            self._limiter.try_acquire(self.name, weight=1)

    def close(self) -> None:
        """Dispose the bucket and let the leaker thread exit."""
        leaker = self._limiter.bucket_factory._leaker
        if leaker is not None and leaker.is_alive() and leaker.ident is not None:
            with _suppressed_lock:
                _suppressed_thread_idents.add(leaker.ident)
        else:
            leaker = None

        self._limiter.dispose(self._bucket)

        if leaker is not None:
            leaker.join(timeout=0.05)

    def __enter__(self) -> RecordRateLimiter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class NoOpLimiter:
    """Limiter used when a step has no rateLimitRps."""

    def acquire(self, records: int = 1) -> None:
        pass

    def close(self) -> None:
        pass


class RequestRateLimiter:
    """Non-blocking per-client request limiter (requests per minute).

    Each client key gets its own in-memory bucket. allow() never waits: a
    request over the budget is refused.

    Example:
        limiter = RequestRateLimiter("webhook_orders", requests_per_minute=60)
        if not limiter.allow(client_ip):
            raise WebhookAuthenticationError("Too many webhook requests", status=429)
    """

    def __init__(self, name: str, requests_per_minute: int) -> None:
        if not _VALID_NAME_PATTERN.match(name):
            msg = f"Invalid rate limiter name: {name!r}. Name must start with a letter."
            raise ValueError(msg)
        if requests_per_minute <= 0:
            msg = f"requests_per_minute must be positive, got {requests_per_minute}"
            raise ValueError(msg)
        self.name = name
        self.rate = Rate(requests_per_minute, Duration.MINUTE)
        self._limiters: dict[str, tuple[Limiter, InMemoryBucket]] = {}
        self._lock = threading.Lock()

    def allow(self, client_key: str) -> bool:
        with self._lock:
            entry = self._limiters.get(client_key)
            if entry is None:
                bucket = InMemoryBucket(rates=[self.rate])
                entry = (Limiter(bucket, raise_when_fail=False, max_delay=None), bucket)
                self._limiters[client_key] = entry
        limiter = entry[0]
        return bool(limiter.try_acquire(f"{self.name}:{client_key}", weight=1))

    def close(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
            self._limiters.clear()
        for limiter, bucket in limiters:
            limiter.dispose(bucket)
