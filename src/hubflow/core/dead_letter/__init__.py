# src/hubflow/core/dead_letter/__init__.py
"""Record error capture, dead-lettering and patch-and-retry audit trail."""

from hubflow.core.dead_letter.database import DeadLetterDB
from hubflow.core.dead_letter.schema import metadata, record_errors_table, retry_audits_table
from hubflow.core.dead_letter.store import DeadLetterStore, RecordErrorEntry, RetryAudit, validate_patch

__all__ = [
    "DeadLetterDB",
    "DeadLetterStore",
    "RecordErrorEntry",
    "RetryAudit",
    "metadata",
    "record_errors_table",
    "retry_audits_table",
    "validate_patch",
]
