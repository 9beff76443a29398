import asyncio
from datetime import timedelta

import pytest

from herald.core.timeutils import to_iso, utc_now
from herald.services import dead_letter_recovery
from herald.services.dead_letter_recovery import (
    DeadLetterConflictError,
    DeadLetterNotFoundError,
    SourceRecordNotFoundError,
)
from herald.worker.dead_letters import build_dead_letter
from tests.fake_store import FakeStore, install, make_job

ADMIN_ID = "admin-1"


def _quarantined_job(store: FakeStore, job_id: str = "job-1", *, status: str = "failed", **fields) -> None:
    job = make_job("email", job_id=job_id, status=status, attempts=5, last_attempt_at="2026-03-01T12:00:00Z")
    job.update({"error": "smtp relay unavailable", "error_code": "provider_error", **fields})
    store.jobs["email"][job_id] = job
    store.dead_letters["email"][job_id] = build_dead_letter(
        "email",
        job,
        {"code": "provider_error", "message": "smtp relay unavailable"},
    )


def _quarantined_event(
    store: FakeStore,
    *,
    status: str = "failed",
    last_attempt_at: str = "2026-03-01T12:00:00Z",
) -> None:
    event = {
        "id": "event-1",
        "type": "Order.Approved",
        "payload": {},
        "target_user_ids": ["buyer-1"],
        "status": status,
        "event_key": "Order.Approved:abc",
        "processing": {"attempts": 5, "last_attempt_at": last_attempt_at, "error": "boom"},
        "created_at": "2026-03-01T11:00:00Z",
    }
    store.events["event-1"] = event
    store.dead_letters["event"]["event-1"] = build_dead_letter(
        "event",
        event,
        {"code": "max_attempts", "message": "Max attempts reached"},
    )


def test_retry_requeues_job_with_fresh_budget(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store, deliver_after_at="2026-03-01T13:00:00Z")

    row = asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))

    job = store.jobs["email"]["job-1"]
    assert job["status"] == "queued"
    assert job["attempts"] == 0
    assert job["error"] is None
    assert job["error_code"] is None
    assert job["deliver_after_at"] is None
    assert job["last_attempt_at"] is None
    assert job["manual_retry_by"] == ADMIN_ID
    assert row["manual_retry_count"] == 1
    assert row["last_manual_retry_by"] == ADMIN_ID
    assert store.audit_events[-1]["action"] == "notification_dead_letter.retry"
    assert store.audit_events[-1]["metadata"] == {"previous_status": "failed"}

    asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))
    assert store.dead_letters["email"]["job-1"]["manual_retry_count"] == 2


def test_retry_resets_event_processing_state(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_event(store)

    asyncio.run(dead_letter_recovery.retry("event", "event-1", ADMIN_ID))

    event = store.events["event-1"]
    assert event["status"] == "pending"
    assert event["processing"] == {"attempts": 0, "last_attempt_at": None, "error": None}
    assert event["manual_retry_by"] == ADMIN_ID


@pytest.mark.parametrize("status", ["sent", "skipped", "processing"])
def test_retry_refuses_jobs_that_are_done_or_in_flight(monkeypatch, status: str) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store, status=status, last_attempt_at=to_iso(utc_now()))

    with pytest.raises(DeadLetterConflictError, match=status):
        asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))

    assert store.jobs["email"]["job-1"]["status"] == status
    assert store.dead_letters["email"]["job-1"]["manual_retry_count"] == 0
    assert store.audit_events == []


@pytest.mark.parametrize("status", ["processed", "processing"])
def test_retry_refuses_events_that_are_done_or_in_flight(monkeypatch, status: str) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_event(store, status=status, last_attempt_at=to_iso(utc_now()))

    with pytest.raises(DeadLetterConflictError):
        asyncio.run(dead_letter_recovery.retry("event", "event-1", ADMIN_ID))

    assert store.events["event-1"]["status"] == status


def test_retry_reports_missing_records(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store)
    del store.jobs["email"]["job-1"]

    with pytest.raises(DeadLetterNotFoundError):
        asyncio.run(dead_letter_recovery.retry("email", "job-404", ADMIN_ID))
    with pytest.raises(SourceRecordNotFoundError):
        asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))
    with pytest.raises(ValueError):
        asyncio.run(dead_letter_recovery.retry("sms", "job-1", ADMIN_ID))


def test_suppress_is_idempotent_and_blocks_retry_until_unsuppressed(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store)

    first = asyncio.run(dead_letter_recovery.suppress("email", "job-1", ADMIN_ID, "  customer closed account "))
    second = asyncio.run(dead_letter_recovery.suppress("email", "job-1", ADMIN_ID, "again"))

    assert first["suppressed"] is True
    assert first["suppressed_reason"] == "customer closed account"
    assert second["suppressed_reason"] == "customer closed account"
    assert [event["action"] for event in store.audit_events] == ["notification_dead_letter.suppress"]

    with pytest.raises(DeadLetterConflictError, match="suppressed"):
        asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))
    assert store.jobs["email"]["job-1"]["status"] == "failed"

    restored = asyncio.run(dead_letter_recovery.unsuppress("email", "job-1", ADMIN_ID))
    assert restored["suppressed"] is False
    assert restored["suppressed_by"] is None
    asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))
    assert store.jobs["email"]["job-1"]["status"] == "queued"


def test_retry_many_skips_suppressed_and_conflicting_entries(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store, "job-1")
    _quarantined_job(store, "job-2")
    _quarantined_job(store, "job-3", status="sent")
    asyncio.run(dead_letter_recovery.suppress("email", "job-2", ADMIN_ID))

    summary = asyncio.run(dead_letter_recovery.retry_many("email", ADMIN_ID))

    assert summary.retried == ["job-1"]
    assert [item["id"] for item in summary.skipped] == ["job-3"]
    assert store.jobs["email"]["job-2"]["status"] == "failed"
    assert store.jobs["email"]["job-3"]["status"] == "sent"


def test_audit_failure_does_not_fail_the_action(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    store.fail_audit = True
    _quarantined_job(store)

    row = asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))

    assert row["manual_retry_count"] == 1
    assert store.jobs["email"]["job-1"]["status"] == "queued"


def test_list_dead_letters_includes_suppressed(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store, "job-1")
    _quarantined_job(store, "job-2")
    asyncio.run(dead_letter_recovery.suppress("email", "job-2", ADMIN_ID))

    rows = asyncio.run(dead_letter_recovery.list_dead_letters("email", limit=500))

    assert {row["id"] for row in rows} == {"job-1", "job-2"}


def test_retry_takes_over_job_whose_processing_lock_expired(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store, status="processing", last_attempt_at=to_iso(utc_now() - timedelta(hours=1)))

    row = asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))

    assert row["manual_retry_count"] == 1
    assert store.jobs["email"]["job-1"]["status"] == "queued"
    assert store.audit_events[-1]["metadata"] == {"previous_status": "processing"}


def test_retry_takes_over_event_whose_processing_lock_expired(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_event(store, status="processing", last_attempt_at=to_iso(utc_now() - timedelta(hours=1)))

    asyncio.run(dead_letter_recovery.retry("event", "event-1", ADMIN_ID))

    assert store.events["event-1"]["status"] == "pending"


def test_lost_retry_counter_write_still_reports_the_retry(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    _quarantined_job(store)

    async def always_conflicting(*args, **kwargs):
        return None

    monkeypatch.setattr(dead_letter_recovery, "compare_and_set_dead_letter", always_conflicting)

    row = asyncio.run(dead_letter_recovery.retry("email", "job-1", ADMIN_ID))

    assert row["id"] == "job-1"
    assert row["manual_retry_count"] == 0
    assert store.jobs["email"]["job-1"]["status"] == "queued"
    assert store.audit_events[-1]["action"] == "notification_dead_letter.retry"
