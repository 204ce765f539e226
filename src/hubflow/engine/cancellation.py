# src/hubflow/engine/cancellation.py
"""Cooperative cancellation shared by a run's orchestrator and step workers."""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe one-shot cancellation flag.

    Workers check ``cancelled`` between chunks and use ``wait()`` instead of
    time.sleep() so that throttling delays end as soon as a cancel arrives.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancel requested") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
