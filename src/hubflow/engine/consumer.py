# src/hubflow/engine/consumer.py
"""ConsumerManager: long-lived consumers feeding streaming pipelines.

One consumer thread per pipeline code pulls messages from a MessageSource
and starts a run seeded with each batch. Stopping drains what the source
still holds, then halts.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from hubflow.contracts.enums import RunStatus
from hubflow.contracts.results import ConsumerStatus, PipelineRun, Record
from hubflow.core.config import ConsumerSettings

slog = structlog.get_logger(__name__)

RunBatch = Callable[[str, list[Record]], PipelineRun]


class InvalidMessageError(ValueError):
    """Raised when a message is neither a record nor a list of records."""


def message_records(message: Any) -> list[Record]:
    """Records carried by one message: a record object or a list of them.

    Raises:
        InvalidMessageError: For any other shape
    """
    if isinstance(message, dict):
        return [message]
    if isinstance(message, list) and all(isinstance(item, dict) for item in message):
        return list(message)
    raise InvalidMessageError(f"Message must be an object or a list of objects, got {type(message).__name__}")


@runtime_checkable
class MessageSource(Protocol):
    """Where a consumer's messages come from (queue, topic, event stream)."""

    def receive(self, max_messages: int, timeout: float) -> list[Any]:
        """Up to ``max_messages`` messages, waiting at most ``timeout`` for the first."""
        ...

    def pending(self) -> int:
        """Messages waiting to be received."""
        ...


class InMemoryMessageSource:
    """Thread-safe in-process queue."""

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()

    def publish(self, message: Any) -> None:
        self._queue.put(message)

    def receive(self, max_messages: int, timeout: float) -> list[Any]:
        try:
            first = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except queue.Empty:
            return []
        messages = [first]
        while len(messages) < max_messages:
            try:
                messages.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return messages

    def pending(self) -> int:
        return self._queue.qsize()


@dataclass
class _Consumer:
    pipeline_code: str
    source: MessageSource
    thread: threading.Thread | None = None
    stop_event: threading.Event | None = None
    started_at: datetime | None = None
    last_message_at: datetime | None = None
    messages_processed: int = 0
    messages_failed: int = 0
    in_flight: int = 0

    @property
    def is_active(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def status(self) -> ConsumerStatus:
        return ConsumerStatus(
            pipeline_code=self.pipeline_code,
            is_active=self.is_active,
            messages_processed=self.messages_processed,
            messages_failed=self.messages_failed,
            in_flight=self.in_flight,
            started_at=self.started_at,
            last_message_at=self.last_message_at,
        )


class ConsumerManager:
    """Starts and stops one consumer per pipeline code. Thread-safe.

    Example:
        manager = ConsumerManager(run_batch=service.run_seeded, settings=settings.consumer)
        source = manager.source("orders-stream")
        manager.start("orders-stream")
        source.publish({"sku": "A-1", "quantity": 2})
        manager.stop("orders-stream")
    """

    def __init__(
        self,
        run_batch: RunBatch,
        *,
        settings: ConsumerSettings | None = None,
        source_factory: Callable[[str], MessageSource] | None = None,
    ) -> None:
        """Initialize manager.

        Args:
            run_batch: Runs the pipeline seeded with a batch of records and
                returns the finished run
            settings: Poll interval, batch size and stop timeout
            source_factory: Creates the message source of a pipeline code
                (in-memory queues by default)
        """
        self._run_batch = run_batch
        self._settings = settings or ConsumerSettings()
        self._source_factory = source_factory or (lambda _code: InMemoryMessageSource())
        self._consumers: dict[str, _Consumer] = {}
        self._lock = threading.Lock()

    def _consumer(self, pipeline_code: str) -> _Consumer:
        # Caller holds the lock
        consumer = self._consumers.get(pipeline_code)
        if consumer is None:
            consumer = _Consumer(pipeline_code=pipeline_code, source=self._source_factory(pipeline_code))
            self._consumers[pipeline_code] = consumer
        return consumer

    def source(self, pipeline_code: str) -> MessageSource:
        """The message source a pipeline's consumer reads from (created on first use)."""
        with self._lock:
            return self._consumer(pipeline_code).source

    def start(self, pipeline_code: str) -> ConsumerStatus:
        """Begin consuming. No-op when the consumer is already active."""
        with self._lock:
            consumer = self._consumer(pipeline_code)
            if consumer.is_active:
                return consumer.status()
            ready = threading.Event()
            consumer.stop_event = threading.Event()
            consumer.started_at = datetime.now(UTC)
            consumer.thread = threading.Thread(
                target=self._consume_loop,
                args=(consumer, consumer.stop_event, ready),
                name=f"hubflow-consumer-{pipeline_code}",
                daemon=False,
            )
            consumer.thread.start()
        # Wait for thread to be ready (prevents startup race)
        ready.wait(timeout=5.0)
        slog.info("consumer_started", pipeline_code=pipeline_code)
        return consumer.status()

    def stop(self, pipeline_code: str, timeout: float | None = None) -> ConsumerStatus:
        """Drain pending messages, then halt. No-op when the consumer is inactive."""
        with self._lock:
            consumer = self._consumers.get(pipeline_code)
            if consumer is None or not consumer.is_active:
                return consumer.status() if consumer is not None else ConsumerStatus(
                    pipeline_code=pipeline_code,
                    is_active=False,
                    messages_processed=0,
                    messages_failed=0,
                    in_flight=0,
                    started_at=None,
                    last_message_at=None,
                )
            assert consumer.stop_event is not None and consumer.thread is not None
            consumer.stop_event.set()
            thread = consumer.thread
        thread.join(timeout if timeout is not None else self._settings.stop_timeout_seconds)
        if thread.is_alive():
            slog.warning("consumer_stop_timeout", pipeline_code=pipeline_code, in_flight=consumer.in_flight)
        else:
            slog.info(
                "consumer_stopped",
                pipeline_code=pipeline_code,
                processed=consumer.messages_processed,
                failed=consumer.messages_failed,
            )
        return consumer.status()

    def status(self, pipeline_code: str) -> ConsumerStatus | None:
        with self._lock:
            consumer = self._consumers.get(pipeline_code)
            return consumer.status() if consumer is not None else None

    def statuses(self) -> list[ConsumerStatus]:
        with self._lock:
            return [c.status() for c in self._consumers.values()]

    def is_active(self, pipeline_code: str) -> bool:
        with self._lock:
            consumer = self._consumers.get(pipeline_code)
            return consumer is not None and consumer.is_active

    def pending(self, pipeline_code: str) -> int:
        with self._lock:
            consumer = self._consumers.get(pipeline_code)
            return consumer.source.pending() if consumer is not None else 0

    def close(self) -> None:
        """Stop every active consumer."""
        with self._lock:
            codes = [code for code, c in self._consumers.items() if c.is_active]
        for code in codes:
            self.stop(code)

    # === Consumer thread ===

    def _consume_loop(self, consumer: _Consumer, stop_event: threading.Event, ready: threading.Event) -> None:
        ready.set()
        poll = self._settings.poll_interval_seconds
        while True:
            stopping = stop_event.is_set()
            messages = consumer.source.receive(self._settings.max_batch, 0 if stopping else poll)
            if not messages:
                if stopping:
                    return
                continue
            self._process(consumer, messages)

    def _process(self, consumer: _Consumer, messages: list[Any]) -> None:
        records: list[Record] = []
        valid = 0
        for message in messages:
            try:
                records.extend(message_records(message))
            except InvalidMessageError as e:
                consumer.messages_failed += 1
                slog.warning("consumer_message_rejected", pipeline_code=consumer.pipeline_code, error=str(e))
            else:
                valid += 1
        consumer.last_message_at = datetime.now(UTC)
        if not valid:
            return

        consumer.in_flight = valid
        try:
            run = self._run_batch(consumer.pipeline_code, records)
        except Exception as e:
            # A failing batch must not end the consumer
            consumer.messages_failed += valid
            slog.error("consumer_batch_failed", pipeline_code=consumer.pipeline_code, messages=valid, error=str(e))
        else:
            if run.status == RunStatus.SUCCESS:
                consumer.messages_processed += valid
            else:
                consumer.messages_failed += valid
                slog.warning(
                    "consumer_run_failed",
                    pipeline_code=consumer.pipeline_code,
                    run_id=run.id,
                    status=run.status.value,
                    messages=valid,
                )
        finally:
            consumer.in_flight = 0
