# src/hubflow/engine/retry.py
"""Step-level retry of adapter calls, driven by tenacity.

A step's ``retries`` counts *extra* attempts after the first, separated by
a fixed ``retryDelayMs``. Only failures classified CONNECTION, TIMEOUT or
RATE_LIMIT are attempted again. Everything else propagates from the first
attempt unchanged.

Per-record retries (``errorHandling.maxRetries``) are a different budget
and live in the step executor.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from hubflow.contracts.enums import RETRYABLE_STAGES, StepType
from hubflow.contracts.errors import classify_exception

T = TypeVar("T")

OnRetry = Callable[[int, BaseException], None]


class RetriesExhausted(Exception):
    """A transient failure outlived every attempt of a step."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how far apart, one adapter call may be attempted.

    ``max_attempts`` includes the first call: ``retries: 2`` means 3 attempts.
    """

    max_attempts: int = 1
    delay_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {self.delay_seconds}")

    @classmethod
    def single_attempt(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def for_step(cls, retries: int, retry_delay_ms: int | None, default_delay_ms: int) -> "RetryPolicy":
        """Policy for a step's ``retries``/``retryDelayMs``; an unset delay uses the runtime default."""
        delay_ms = default_delay_ms if retry_delay_ms is None else retry_delay_ms
        return cls(max_attempts=retries + 1, delay_seconds=delay_ms / 1000)

    @property
    def retries(self) -> int:
        return self.max_attempts - 1


def is_transient(step_type: StepType | None = None) -> Callable[[BaseException], bool]:
    """Predicate: True for exceptions whose classified stage is retryable."""

    def _transient(exc: BaseException) -> bool:
        return classify_exception(exc, step_type) in RETRYABLE_STAGES

    return _transient


class RetryManager:
    """Calls an operation under a RetryPolicy.

    Example:
        manager = RetryManager(RetryPolicy(max_attempts=3, delay_seconds=0.5), step_type=StepType.LOAD)
        result = manager.call(
            lambda: adapter.execute(chunk, ctx),
            on_retry=lambda attempt, error: hooks.fire(HookStage.ON_RETRY, ...),
        )
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        step_type: StepType | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize.

        Args:
            policy: Attempt count and delay
            step_type: Used to classify ValueError/TypeError failures
            sleep: Replaces time.sleep between attempts (a cancellation
                token's wait, so cancelling cuts the delay short)
        """
        self.policy = policy
        self._transient = is_transient(step_type)
        self._sleep = sleep

    def call(self, operation: Callable[[], T], *, on_retry: OnRetry | None = None) -> T:
        """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

        ``on_retry`` is told about each failed attempt that will be followed
        by another one, never about the last.

        Raises:
            RetriesExhausted: A transient error persisted through every attempt
            Exception: The first non-transient error, unchanged
        """
        options: dict[str, object] = {}
        if self._sleep is not None:
            options["sleep"] = self._sleep
        if on_retry is not None:
            options["before_sleep"] = _announce(on_retry)

        retrying = Retrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_fixed(self.policy.delay_seconds),
            retry=retry_if_exception(self._transient),
            reraise=False,
            **options,  # type: ignore[arg-type]
        )
        try:
            return retrying(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            assert error is not None, "tenacity only gives up on a failed attempt"
            raise RetriesExhausted(last.attempt_number, error) from error


def _announce(on_retry: OnRetry) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        assert state.outcome is not None
        error = state.outcome.exception()
        assert error is not None
        on_retry(state.attempt_number, error)

    return _before_sleep
