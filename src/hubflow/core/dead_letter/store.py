# src/hubflow/core/dead_letter/store.py
"""DeadLetterStore: captured record errors and their retry audit trail.

Lifecycle of an entry (DeadLetterStatus):

    DEAD_LETTER --patch-and-retry succeeds--> RESOLVED
    RESOLVED --patch-and-retry fails--> DEAD_LETTER
    DEAD_LETTER --mark_dead(True)--> DEAD --mark_dead(False)--> DEAD_LETTER

Every patch-and-retry of a DEAD_LETTER or RESOLVED entry is replayed and
audited; DEAD entries are not replayed.

The captured payload is never updated. A patch-and-retry writes one
append-only retry_audits row holding previous payload, patch and resulting
payload (previous | patch), so applying the same patch twice yields the
same resulting payload.

All writes to one entry are serialized through a lock chosen by hashing the
error ID into a fixed set of stripes; callers replaying a record hold it for
the whole replay via ``locked()``.
"""

from __future__ import annotations

import json
import threading
import uuid
import zlib
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, func, select

from hubflow.contracts.enums import DeadLetterStatus, ErrorStage, StepType
from hubflow.contracts.errors import InvalidPatchError, RecordErrorNotFoundError
from hubflow.core.canonical import canonical_json, stable_hash
from hubflow.core.dead_letter.database import DeadLetterDB
from hubflow.core.dead_letter.schema import record_errors_table, retry_audits_table

slog = structlog.get_logger(__name__)

MASK = "***"

# Entries sharing a stripe serialize against each other; the lock count stays fixed
DEFAULT_LOCK_STRIPES = 64


def _now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True, slots=True)
class RecordErrorEntry:
    error_id: str
    run_id: str
    pipeline_id: str
    step_key: str
    step_type: StepType
    message: str
    code: str | None
    field: str | None
    stage: ErrorStage
    payload: dict[str, Any]
    retryable: bool
    retry_count: int
    status: DeadLetterStatus
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self, mask_fields: Sequence[str] = ()) -> dict[str, Any]:
        payload = {k: (MASK if k in mask_fields else v) for k, v in self.payload.items()}
        return {
            "id": self.error_id,
            "runId": self.run_id,
            "pipelineId": self.pipeline_id,
            "stepKey": self.step_key,
            "stepType": self.step_type.value,
            "message": self.message,
            "code": self.code,
            "field": self.field,
            "stage": self.stage.value,
            "payload": payload,
            "retriable": self.retryable,
            "retryCount": self.retry_count,
            "status": self.status.value,
            "deadLetter": self.status != DeadLetterStatus.RESOLVED,
            "lastError": self.last_error,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RetryAudit:
    audit_id: str
    error_id: str
    attempt: int
    previous_payload: dict[str, Any]
    patch: dict[str, Any]
    resulting_payload: dict[str, Any]
    actor: str
    outcome: str
    outcome_message: str | None
    run_id: str | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.audit_id,
            "errorId": self.error_id,
            "attempt": self.attempt,
            "previousPayload": self.previous_payload,
            "patch": self.patch,
            "resultingPayload": self.resulting_payload,
            "actor": self.actor,
            "outcome": self.outcome,
            "outcomeMessage": self.outcome_message,
            "runId": self.run_id,
            "timestamp": self.created_at.isoformat(),
        }


def validate_patch(patch: Any) -> dict[str, Any]:
    """Check that a patch is a JSON object that survives canonicalization.

    Raises:
        InvalidPatchError: If the patch is not a canonicalizable JSON object
    """
    if patch is None:
        return {}
    if not isinstance(patch, dict):
        raise InvalidPatchError(f"Patch must be a JSON object, got {type(patch).__name__}")
    try:
        canonical_json(patch)
    except (ValueError, TypeError) as e:
        raise InvalidPatchError(f"Patch is not valid JSON: {e}") from e
    return patch


class DeadLetterStore:
    """Repository for record errors and retry audits.

    Example:
        store = DeadLetterStore(DeadLetterDB.in_memory())
        entry = store.capture(run_id=..., pipeline_id=..., step_key="validate", ...)
        with store.locked(entry.error_id):
            resulting = store.resulting_payload(entry.error_id, {"quantity": 1})
            ...  # replay
            store.record_retry(entry.error_id, patch, resulting, actor="ops", succeeded=True)
    """

    def __init__(self, db: DeadLetterDB, *, lock_stripes: int = DEFAULT_LOCK_STRIPES) -> None:
        if lock_stripes < 1:
            raise ValueError(f"lock_stripes must be >= 1, got {lock_stripes}")
        self._db = db
        self._db_lock = threading.RLock()
        self._locks = tuple(threading.RLock() for _ in range(lock_stripes))

    @property
    def db(self) -> DeadLetterDB:
        return self._db

    # === Locking ===

    def _lock_for(self, error_id: str) -> threading.RLock:
        return self._locks[zlib.crc32(error_id.encode("utf-8")) % len(self._locks)]

    @contextmanager
    def locked(self, error_id: str) -> Iterator[None]:
        """Serialize work on one record error."""
        with self._lock_for(error_id):
            yield

    # === Capture and lookup ===

    def capture(
        self,
        *,
        run_id: str,
        pipeline_id: str,
        step_key: str,
        step_type: StepType,
        record: dict[str, Any],
        message: str,
        code: str | None = None,
        field: str | None = None,
        stage: ErrorStage = ErrorStage.UNKNOWN,
        retryable: bool = False,
        retry_count: int = 0,
    ) -> RecordErrorEntry:
        """Store a record that exhausted its retry budget as DEAD_LETTER."""
        payload_json = canonical_json(record)
        now = _now()
        error_id = _generate_id("rerr")
        with self._db_lock, self._db.connection() as conn:
            conn.execute(
                record_errors_table.insert().values(
                    error_id=error_id,
                    run_id=run_id,
                    pipeline_id=pipeline_id,
                    step_key=step_key,
                    step_type=step_type.value,
                    message=message,
                    code=code,
                    field=field,
                    stage=stage.value,
                    payload_json=payload_json,
                    payload_hash=stable_hash(record),
                    retryable=retryable,
                    retry_count=retry_count,
                    status=DeadLetterStatus.DEAD_LETTER.value,
                    last_error=message,
                    created_at=now,
                    updated_at=now,
                )
            )
        slog.info("record_dead_lettered", error_id=error_id, run_id=run_id, step_key=step_key, code=code)
        return self.get(error_id)

    @staticmethod
    def _entry(row: Any) -> RecordErrorEntry:
        return RecordErrorEntry(
            error_id=row.error_id,
            run_id=row.run_id,
            pipeline_id=row.pipeline_id,
            step_key=row.step_key,
            step_type=StepType(row.step_type),
            message=row.message,
            code=row.code,
            field=row.field,
            stage=ErrorStage(row.stage),
            payload=json.loads(row.payload_json),
            retryable=bool(row.retryable),
            retry_count=int(row.retry_count),
            status=DeadLetterStatus(row.status),
            last_error=row.last_error,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    def get(self, error_id: str) -> RecordErrorEntry:
        """Look up one entry.

        Raises:
            RecordErrorNotFoundError: If no entry has this ID
        """
        with self._db_lock, self._db.connection() as conn:
            row = conn.execute(select(record_errors_table).where(record_errors_table.c.error_id == error_id)).first()
        if row is None:
            raise RecordErrorNotFoundError(f"Record error not found: {error_id}")
        return self._entry(row)

    def list_entries(
        self,
        *,
        pipeline_id: str | None = None,
        status: DeadLetterStatus | None = None,
        run_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RecordErrorEntry]:
        conditions = []
        if pipeline_id is not None:
            conditions.append(record_errors_table.c.pipeline_id == pipeline_id)
        if status is not None:
            conditions.append(record_errors_table.c.status == status.value)
        if run_id is not None:
            conditions.append(record_errors_table.c.run_id == run_id)
        query = select(record_errors_table).order_by(record_errors_table.c.created_at, record_errors_table.c.error_id)
        if conditions:
            query = query.where(and_(*conditions))
        with self._db_lock, self._db.connection() as conn:
            rows = conn.execute(query.limit(limit).offset(offset)).fetchall()
        return [self._entry(row) for row in rows]

    def count_by_status(self, pipeline_id: str | None = None) -> dict[DeadLetterStatus, int]:
        query = select(record_errors_table.c.status, func.count()).group_by(record_errors_table.c.status)
        if pipeline_id is not None:
            query = query.where(record_errors_table.c.pipeline_id == pipeline_id)
        with self._db_lock, self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        counts = {status: 0 for status in DeadLetterStatus}
        for status, count in rows:
            counts[DeadLetterStatus(status)] = int(count)
        return counts

    def count_dead_letters_by_pipeline(self) -> dict[str, int]:
        query = (
            select(record_errors_table.c.pipeline_id, func.count())
            .where(record_errors_table.c.status == DeadLetterStatus.DEAD_LETTER.value)
            .group_by(record_errors_table.c.pipeline_id)
        )
        with self._db_lock, self._db.connection() as conn:
            return {pipeline_id: int(count) for pipeline_id, count in conn.execute(query).fetchall()}

    def resolved_since(self, since: timedelta) -> int:
        cutoff = _now() - since
        query = select(func.count()).where(
            and_(
                record_errors_table.c.status == DeadLetterStatus.RESOLVED.value,
                record_errors_table.c.updated_at >= cutoff,
            )
        )
        with self._db_lock, self._db.connection() as conn:
            return int(conn.execute(query).scalar_one())

    # === Operator actions ===

    def mark_dead(self, error_id: str, dead: bool) -> bool:
        """Exclude an entry from reprocessing (dead=True) or lift the exclusion.

        Returns:
            False when the entry is RESOLVED (nothing left to exclude or
            restore), True otherwise. Idempotent.

        Raises:
            RecordErrorNotFoundError: If no entry has this ID
        """
        with self.locked(error_id):
            entry = self.get(error_id)
            if entry.status == DeadLetterStatus.RESOLVED:
                return False
            target = DeadLetterStatus.DEAD if dead else DeadLetterStatus.DEAD_LETTER
            if entry.status != target:
                self._set_status(error_id, target)
                slog.info("record_error_status_changed", error_id=error_id, status=target.value)
            return True

    def _set_status(self, error_id: str, status: DeadLetterStatus, *, last_error: str | None = None, bump_retry: bool = False) -> None:
        values: dict[str, Any] = {"status": status.value, "updated_at": _now()}
        if last_error is not None:
            values["last_error"] = last_error
        if bump_retry:
            values["retry_count"] = record_errors_table.c.retry_count + 1
        with self._db_lock, self._db.connection() as conn:
            conn.execute(record_errors_table.update().where(record_errors_table.c.error_id == error_id).values(**values))

    def resulting_payload(self, error_id: str, patch: dict[str, Any] | None) -> dict[str, Any]:
        """Compute the payload a patch-and-retry would submit.

        Raises:
            RecordErrorNotFoundError: If no entry has this ID
            InvalidPatchError: If the patch is not a JSON object
        """
        valid_patch = validate_patch(patch)
        entry = self.get(error_id)
        return {**entry.payload, **valid_patch}

    def record_retry(
        self,
        error_id: str,
        patch: dict[str, Any] | None,
        resulting: dict[str, Any],
        *,
        actor: str,
        succeeded: bool,
        message: str | None = None,
        run_id: str | None = None,
    ) -> RetryAudit:
        """Append the audit row for a finished retry and update the entry status."""
        with self.locked(error_id):
            entry = self.get(error_id)
            audit_id = _generate_id("raud")
            now = _now()
            outcome = "SUCCEEDED" if succeeded else "FAILED"
            with self._db_lock, self._db.connection() as conn:
                conn.execute(
                    retry_audits_table.insert().values(
                        audit_id=audit_id,
                        error_id=error_id,
                        attempt=entry.retry_count + 1,
                        previous_payload_json=canonical_json(entry.payload),
                        patch_json=canonical_json(patch or {}),
                        resulting_payload_json=canonical_json(resulting),
                        actor=actor,
                        outcome=outcome,
                        outcome_message=message,
                        run_id=run_id,
                        created_at=now,
                    )
                )
            self._set_status(
                error_id,
                DeadLetterStatus.RESOLVED if succeeded else DeadLetterStatus.DEAD_LETTER,
                last_error=None if succeeded else message,
                bump_retry=True,
            )
        slog.info("record_retry_recorded", error_id=error_id, outcome=outcome, actor=actor)
        return self.audits(error_id)[-1]

    def audits(self, error_id: str) -> list[RetryAudit]:
        query = (
            select(retry_audits_table)
            .where(retry_audits_table.c.error_id == error_id)
            .order_by(retry_audits_table.c.attempt, retry_audits_table.c.created_at)
        )
        with self._db_lock, self._db.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [
            RetryAudit(
                audit_id=row.audit_id,
                error_id=row.error_id,
                attempt=int(row.attempt),
                previous_payload=json.loads(row.previous_payload_json),
                patch=json.loads(row.patch_json),
                resulting_payload=json.loads(row.resulting_payload_json),
                actor=row.actor,
                outcome=row.outcome,
                outcome_message=row.outcome_message,
                run_id=row.run_id,
                created_at=_aware(row.created_at),
            )
            for row in rows
        ]

    def close(self) -> None:
        self._db.close()
