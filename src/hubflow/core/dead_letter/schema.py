# src/hubflow/core/dead_letter/schema.py
"""SQLAlchemy table definitions for record errors and retry audits.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Record errors ===

record_errors_table = Table(
    "record_errors",
    metadata,
    Column("error_id", String(64), primary_key=True),
    Column("run_id", String(64), nullable=False),
    Column("pipeline_id", String(128), nullable=False),
    Column("step_key", String(128), nullable=False),
    Column("step_type", String(32), nullable=False),
    Column("message", Text, nullable=False),
    Column("code", String(64)),
    Column("field", String(256)),
    Column("stage", String(32), nullable=False),
    # Original record as canonical JSON; never updated after insert
    Column("payload_json", Text, nullable=False),
    Column("payload_hash", String(64), nullable=False),
    Column("retryable", Boolean, nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("status", String(32), nullable=False),
    Column("last_error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Index("ix_record_errors_pipeline_status", record_errors_table.c.pipeline_id, record_errors_table.c.status)
Index("ix_record_errors_run", record_errors_table.c.run_id)

# === Retry audits (append-only) ===

retry_audits_table = Table(
    "retry_audits",
    metadata,
    Column("audit_id", String(64), primary_key=True),
    Column("error_id", String(64), ForeignKey("record_errors.error_id"), nullable=False),
    Column("attempt", Integer, nullable=False),
    Column("previous_payload_json", Text, nullable=False),
    Column("patch_json", Text, nullable=False),
    Column("resulting_payload_json", Text, nullable=False),
    Column("actor", String(128), nullable=False),
    Column("outcome", String(32), nullable=False),
    Column("outcome_message", Text),
    Column("run_id", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

Index("ix_retry_audits_error", retry_audits_table.c.error_id, retry_audits_table.c.attempt)
