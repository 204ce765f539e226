# tests/core/test_dead_letter_store.py
"""Tests for DeadLetterStore capture, status transitions and retry audits."""

import threading
from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from hubflow.contracts.enums import DeadLetterStatus, ErrorStage, StepType
from hubflow.contracts.errors import InvalidPatchError, RecordErrorNotFoundError
from hubflow.core.dead_letter import DeadLetterDB, DeadLetterStore, validate_patch


def _capture(store: DeadLetterStore, record: dict, *, pipeline_id: str = "orders", run_id: str = "run_1"):
    return store.capture(
        run_id=run_id,
        pipeline_id=pipeline_id,
        step_key="validate",
        step_type=StepType.VALIDATE,
        record=record,
        message="Missing required field(s): quantity",
        code="REQUIRED",
        field="quantity",
        stage=ErrorStage.VALIDATION,
    )


class TestCapture:
    def test_capture_stores_dead_letter(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})

        assert entry.error_id.startswith("rerr_")
        assert entry.status == DeadLetterStatus.DEAD_LETTER
        assert entry.payload == {"name": "x"}
        assert entry.retry_count == 0
        assert entry.created_at.tzinfo is not None
        assert dead_letters.get(entry.error_id) == entry

    def test_unknown_id(self, dead_letters: DeadLetterStore) -> None:
        with pytest.raises(RecordErrorNotFoundError):
            dead_letters.get("rerr_missing")

    def test_list_filters(self, dead_letters: DeadLetterStore) -> None:
        _capture(dead_letters, {"a": 1}, pipeline_id="orders", run_id="r1")
        _capture(dead_letters, {"a": 2}, pipeline_id="orders", run_id="r2")
        _capture(dead_letters, {"a": 3}, pipeline_id="invoices", run_id="r3")

        assert len(dead_letters.list_entries()) == 3
        assert [e.payload for e in dead_letters.list_entries(pipeline_id="orders")] == [{"a": 1}, {"a": 2}]
        assert len(dead_letters.list_entries(run_id="r3")) == 1
        assert len(dead_letters.list_entries(limit=1, offset=2)) == 1
        assert dead_letters.count_dead_letters_by_pipeline() == {"orders": 2, "invoices": 1}

    def test_to_dict_masks_fields(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x", "ssn": "123"})

        wire = entry.to_dict(mask_fields=("ssn",))

        assert wire["payload"] == {"name": "x", "ssn": "***"}
        assert wire["status"] == "DEAD_LETTER"
        assert wire["deadLetter"] is True


class TestMarkDead:
    def test_transitions(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})

        assert dead_letters.mark_dead(entry.error_id, True) is True
        assert dead_letters.get(entry.error_id).status == DeadLetterStatus.DEAD
        assert dead_letters.mark_dead(entry.error_id, True) is True

        assert dead_letters.mark_dead(entry.error_id, False) is True
        assert dead_letters.get(entry.error_id).status == DeadLetterStatus.DEAD_LETTER

    def test_resolved_cannot_be_marked(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})
        dead_letters.record_retry(entry.error_id, None, entry.payload, actor="ops", succeeded=True)

        assert dead_letters.mark_dead(entry.error_id, True) is False
        assert dead_letters.get(entry.error_id).status == DeadLetterStatus.RESOLVED

    def test_unknown_id(self, dead_letters: DeadLetterStore) -> None:
        with pytest.raises(RecordErrorNotFoundError):
            dead_letters.mark_dead("rerr_missing", True)


class TestRetryAudit:
    def test_resulting_payload_merges_patch(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x", "qty": None})

        assert dead_letters.resulting_payload(entry.error_id, {"qty": 2}) == {"name": "x", "qty": 2}
        assert dead_letters.resulting_payload(entry.error_id, None) == {"name": "x", "qty": None}

    def test_failed_then_succeeded(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})

        failed = dead_letters.record_retry(
            entry.error_id, None, {"name": "x"}, actor="ops", succeeded=False, message="still missing"
        )
        after_failure = dead_letters.get(entry.error_id)

        assert failed.attempt == 1
        assert failed.outcome == "FAILED"
        assert after_failure.status == DeadLetterStatus.DEAD_LETTER
        assert after_failure.retry_count == 1
        assert after_failure.last_error == "still missing"

        succeeded = dead_letters.record_retry(
            entry.error_id, {"quantity": 2}, {"name": "x", "quantity": 2}, actor="ops", succeeded=True, run_id="run_2"
        )

        assert succeeded.attempt == 2
        assert succeeded.previous_payload == {"name": "x"}
        assert succeeded.patch == {"quantity": 2}
        assert succeeded.resulting_payload == {"name": "x", "quantity": 2}
        assert succeeded.run_id == "run_2"
        assert dead_letters.get(entry.error_id).status == DeadLetterStatus.RESOLVED
        # captured payload is never rewritten
        assert dead_letters.get(entry.error_id).payload == {"name": "x"}
        assert [a.attempt for a in dead_letters.audits(entry.error_id)] == [1, 2]
        assert dead_letters.resolved_since(timedelta(hours=1)) == 1

    def test_count_by_status(self, dead_letters: DeadLetterStore) -> None:
        first = _capture(dead_letters, {"a": 1})
        _capture(dead_letters, {"a": 2})
        dead_letters.mark_dead(first.error_id, True)

        counts = dead_letters.count_by_status()

        assert counts[DeadLetterStatus.DEAD] == 1
        assert counts[DeadLetterStatus.DEAD_LETTER] == 1
        assert counts[DeadLetterStatus.RESOLVED] == 0


class TestValidatePatch:
    @pytest.mark.parametrize("patch", [[1, 2], "text", 3])
    def test_non_object_rejected(self, patch: object) -> None:
        with pytest.raises(InvalidPatchError):
            validate_patch(patch)

    def test_non_finite_rejected(self) -> None:
        with pytest.raises(InvalidPatchError):
            validate_patch({"x": float("nan")})

    def test_none_is_empty(self) -> None:
        assert validate_patch(None) == {}


class TestLocking:
    def test_lock_count_is_fixed(self) -> None:
        store = DeadLetterStore(DeadLetterDB.in_memory(), lock_stripes=4)
        try:
            locks = {id(store._lock_for(f"rerr_{i:04d}")) for i in range(1000)}
            assert len(locks) <= 4
            assert store._lock_for("rerr_0001") is store._lock_for("rerr_0001")
        finally:
            store.close()

    def test_locked_is_reentrant(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})

        with dead_letters.locked(entry.error_id):
            assert dead_letters.mark_dead(entry.error_id, True) is True

        assert dead_letters.get(entry.error_id).status == DeadLetterStatus.DEAD

    def test_same_id_serializes_across_threads(self, dead_letters: DeadLetterStore) -> None:
        entry = _capture(dead_letters, {"name": "x"})
        acquired = threading.Event()

        def contend() -> None:
            with dead_letters.locked(entry.error_id):
                acquired.set()

        with dead_letters.locked(entry.error_id):
            worker = threading.Thread(target=contend)
            worker.start()
            assert not acquired.wait(0.05)
        worker.join(timeout=5)
        assert acquired.is_set()

    def test_stripe_count_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="lock_stripes"):
            DeadLetterStore(DeadLetterDB.in_memory(), lock_stripes=0)


patch_values = st.one_of(st.none(), st.booleans(), st.integers(min_value=-(10**6), max_value=10**6), st.text(max_size=8))
patches = st.dictionaries(st.text(min_size=1, max_size=6), patch_values, max_size=5)


class TestPatchIdempotence:
    @given(patch=patches)
    def test_same_patch_twice_gives_same_result_and_two_audits(self, patch: dict[str, object]) -> None:
        # A fresh store per example; function-scoped fixtures are shared across examples
        store = DeadLetterStore(DeadLetterDB.in_memory())
        try:
            entry = _capture(store, {"name": "x", "qty": None})

            first = store.resulting_payload(entry.error_id, patch)
            second = store.resulting_payload(entry.error_id, patch)
            failed = store.record_retry(entry.error_id, patch, first, actor="ops", succeeded=False, message="still bad")
            succeeded = store.record_retry(entry.error_id, patch, second, actor="ops", succeeded=True)

            assert first == second == {"name": "x", "qty": None, **patch}
            assert failed.audit_id != succeeded.audit_id
            assert failed.resulting_payload == succeeded.resulting_payload == first
            assert failed.patch == succeeded.patch == patch
            assert store.get(entry.error_id).payload == {"name": "x", "qty": None}
        finally:
            store.close()
