# src/hubflow/core/logging.py
"""Structured logging for the pipeline runtime.

Engine modules log key-value events through structlog.get_logger(__name__)
(run_id, step_key, attempt, record counts). Adapters are free to use plain
logging.getLogger(__name__); configure_logging() routes both through the same
ProcessorFormatter so a run produces a single stream of JSON lines or
console output.

Run and step identity is bound with run_context() rather than passed to
every call, so events from deep inside an adapter still carry the run_id.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import IO, TYPE_CHECKING, Any

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from hubflow.core.config import LoggingSettings

# Libraries whose DEBUG output is connection and bucket bookkeeping
_QUIET_LIBRARIES: tuple[str, ...] = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "pyrate_limiter",
    "opentelemetry",
)

# Context keys that are attached to events in this order when present
_RUN_KEYS: tuple[str, ...] = ("run_id", "pipeline_id", "step_key")


def _strip_formatter_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    # ProcessorFormatter always sets both; a KeyError means the chain is miswired
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _order_run_keys(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Move run identity to the front so console lines line up per run."""
    head = {key: event_dict.pop(key) for key in _RUN_KEYS if key in event_dict}
    if not head:
        return event_dict
    return {"event": event_dict.pop("event", None), **head, **event_dict}


def configure_logging(settings: LoggingSettings | None = None, *, stream: IO[str] | None = None) -> None:
    """Install structlog and stdlib handlers for the runtime.

    Safe to call more than once; each call replaces the root handlers.

    Args:
        settings: Level and renderer; INFO console output when omitted
        stream: Destination stream (stdout when omitted)
    """
    level_name = settings.level if settings is not None else "INFO"
    json_output = settings.json_output if settings is not None else False
    level = logging.getLevelName(level_name)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        _order_run_keys,
    ]
    renderer: Any
    if json_output:
        render_chain: list[Any] = [_strip_formatter_fields, structlog.processors.format_exc_info]
        renderer = structlog.processors.JSONRenderer(sort_keys=False)
    else:
        render_chain = [_strip_formatter_fields]
        renderer = structlog.dev.ConsoleRenderer(colors=stream is None and sys.stdout.isatty())

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Cached loggers would keep the previous configuration
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=[*render_chain, renderer], foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    quiet_level = max(level, logging.WARNING)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(quiet_level)


def run_context(**values: Any) -> AbstractContextManager[None]:
    """Bind key-value pairs (run_id, pipeline_id, step_key) to every log event in scope.

    None values are skipped. Bindings live in the current thread's context,
    so worker threads bind again.

    Example:
        with run_context(run_id=run.id, pipeline_id=run.pipeline_id):
            orchestrator.execute(...)
    """
    return structlog.contextvars.bound_contextvars(**{k: v for k, v in values.items() if v is not None})
