"""Operator actions on quarantined Events and Jobs.

Retry puts the source record back into its queue with a fresh attempt
budget; it never touches records that already reached a successful
terminal state or that a worker holds under a live processing lock. Suppression is a flag on
the dead letter only: suppressed entries stay listed, are skipped by bulk
retry, and must be unsuppressed before a single retry is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from herald.core.logging import get_logger
from herald.core.settings import get_settings
from herald.core.supabase_rest import (
    compare_and_set_dead_letter,
    compare_and_set_event,
    compare_and_set_job,
    record_audit_event,
    select_dead_letter,
    select_dead_letters,
    select_event_by_id,
    select_job_by_id,
)
from herald.core.timeutils import parse_utc_timestamp, to_iso, utc_now
from herald.notifications.types import DEAD_LETTER_KINDS
from herald.worker.retry import sanitize_error

logger = get_logger("services.dead_letter_recovery")

_EVENT_UNRETRYABLE_STATUSES = {"processed"}
_JOB_UNRETRYABLE_STATUSES = {"sent", "skipped"}
_COUNTER_WRITE_ATTEMPTS = 3


class DeadLetterNotFoundError(LookupError):
    pass


class SourceRecordNotFoundError(LookupError):
    pass


class DeadLetterConflictError(RuntimeError):
    pass


@dataclass
class RetryManySummary:
    retried: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)


def _require_kind(kind: str) -> str:
    if kind not in DEAD_LETTER_KINDS:
        raise ValueError(f"unknown dead-letter kind: {kind}")
    return kind


def _safe_int(value: object | None) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


def _holds_live_lock(status: str, last_attempt_at: object, lock_seconds: int) -> bool:
    if status != "processing":
        return False
    started = parse_utc_timestamp(last_attempt_at)
    return started is None or utc_now() - started < timedelta(seconds=lock_seconds)


async def _record_audit(action: str, kind: str, dead_letter_id: str, actor_id: str, **metadata: Any) -> None:
    try:
        await record_audit_event(
            {
                "actor_id": actor_id,
                "action": f"notification_dead_letter.{action}",
                "entity_type": f"{kind}_dead_letter",
                "entity_id": dead_letter_id,
                "metadata": metadata,
            }
        )
    except Exception as exc:
        logger.warning(
            "dead_letter_recovery.audit_failed",
            extra={
                "component": "admin",
                "action": action,
                "kind": kind,
                "dead_letter_id": dead_letter_id,
                "error": sanitize_error(exc, default_message="audit write failed"),
            },
        )


async def _get_dead_letter(kind: str, dead_letter_id: str) -> dict[str, Any]:
    row = await select_dead_letter(kind, dead_letter_id)
    if row is None:
        raise DeadLetterNotFoundError(f"Dead letter {kind}/{dead_letter_id} not found.")
    return row


async def list_dead_letters(kind: str, limit: int = 100) -> list[dict[str, Any]]:
    return await select_dead_letters(_require_kind(kind), limit=min(200, max(1, limit)))


async def _set_suppressed(
    kind: str,
    dead_letter_id: str,
    *,
    suppressed: bool,
    patch: dict[str, Any],
) -> tuple[dict[str, Any], bool]:
    current = await _get_dead_letter(_require_kind(kind), dead_letter_id)
    if bool(current.get("suppressed")) == suppressed:
        return current, False
    updated = await compare_and_set_dead_letter(
        kind,
        dead_letter_id,
        expected={"suppressed": not suppressed},
        patch={"suppressed": suppressed, **patch},
    )
    if updated is None:
        # Another operator flipped the flag first.
        return await _get_dead_letter(kind, dead_letter_id), False
    return updated, True


async def suppress(
    kind: str,
    dead_letter_id: str,
    actor_id: str,
    reason: str | None = None,
) -> dict[str, Any]:
    row, changed = await _set_suppressed(
        kind,
        dead_letter_id,
        suppressed=True,
        patch={
            "suppressed_at": to_iso(utc_now()),
            "suppressed_by": actor_id,
            "suppressed_reason": (reason or "").strip() or None,
        },
    )
    if changed:
        logger.info(
            "dead_letter_recovery.suppressed",
            extra={"component": "admin", "kind": kind, "dead_letter_id": dead_letter_id, "actor_id": actor_id},
        )
        await _record_audit("suppress", kind, dead_letter_id, actor_id, reason=(reason or "").strip() or None)
    return row


async def unsuppress(kind: str, dead_letter_id: str, actor_id: str) -> dict[str, Any]:
    row, changed = await _set_suppressed(
        kind,
        dead_letter_id,
        suppressed=False,
        patch={"suppressed_at": None, "suppressed_by": None, "suppressed_reason": None},
    )
    if changed:
        logger.info(
            "dead_letter_recovery.unsuppressed",
            extra={"component": "admin", "kind": kind, "dead_letter_id": dead_letter_id, "actor_id": actor_id},
        )
        await _record_audit("unsuppress", kind, dead_letter_id, actor_id)
    return row


async def _reset_source(kind: str, source_id: str, actor_id: str) -> str:
    now = to_iso(utc_now())
    if kind == "event":
        event = await select_event_by_id(source_id)
        if event is None:
            raise SourceRecordNotFoundError(f"Event {source_id} not found.")
        current_status = str(event.get("status") or "")
        processing = event.get("processing") if isinstance(event.get("processing"), dict) else {}
        lock_seconds = get_settings().EVENT_PROCESSING_LOCK_SECONDS
        if current_status in _EVENT_UNRETRYABLE_STATUSES or _holds_live_lock(
            current_status, processing.get("last_attempt_at"), lock_seconds
        ):
            raise DeadLetterConflictError(f"Event is {current_status}; refusing to retry.")
        reset = await compare_and_set_event(
            source_id,
            expected_status=current_status,
            expected_attempts=_safe_int(processing.get("attempts")),
            patch={
                "status": "pending",
                "processing": {"attempts": 0, "last_attempt_at": None, "error": None},
                "manual_retry_at": now,
                "manual_retry_by": actor_id,
            },
        )
    else:
        job = await select_job_by_id(kind, source_id)
        if job is None:
            raise SourceRecordNotFoundError(f"{kind} job {source_id} not found.")
        current_status = str(job.get("status") or "")
        lock_seconds = get_settings().JOB_PROCESSING_LOCK_SECONDS
        if current_status in _JOB_UNRETRYABLE_STATUSES or _holds_live_lock(
            current_status, job.get("last_attempt_at"), lock_seconds
        ):
            raise DeadLetterConflictError(f"Job is {current_status}; refusing to retry.")
        reset = await compare_and_set_job(
            kind,
            source_id,
            expected_status=current_status,
            expected_attempts=_safe_int(job.get("attempts")),
            patch={
                "status": "queued",
                "attempts": 0,
                "error": None,
                "error_code": None,
                "deliver_after_at": None,
                "last_attempt_at": None,
                "provider_message_id": None,
                "manual_retry_at": now,
                "manual_retry_by": actor_id,
            },
        )
    if reset is None:
        raise DeadLetterConflictError("Source record changed while retrying; reload and try again.")
    return current_status


async def _increment_retry_count(kind: str, dead_letter: dict[str, Any], actor_id: str) -> dict[str, Any]:
    dead_letter_id = str(dead_letter["id"])
    current = dead_letter
    for _ in range(_COUNTER_WRITE_ATTEMPTS):
        count = _safe_int(current.get("manual_retry_count"))
        updated = await compare_and_set_dead_letter(
            kind,
            dead_letter_id,
            expected={"manual_retry_count": count},
            patch={
                "manual_retry_count": count + 1,
                "last_manual_retry_at": to_iso(utc_now()),
                "last_manual_retry_by": actor_id,
            },
        )
        if updated is not None:
            return updated
        current = await _get_dead_letter(kind, dead_letter_id)
    raise DeadLetterConflictError("Dead letter changed concurrently; retry count not recorded.")


async def retry(kind: str, dead_letter_id: str, actor_id: str) -> dict[str, Any]:
    dead_letter = await _get_dead_letter(_require_kind(kind), dead_letter_id)
    if bool(dead_letter.get("suppressed")):
        raise DeadLetterConflictError("Dead letter is suppressed; unsuppress it before retrying.")

    previous_status = await _reset_source(kind, dead_letter_id, actor_id)
    try:
        updated = await _increment_retry_count(kind, dead_letter, actor_id)
    except DeadLetterConflictError:
        # The source is already re-armed at this point.
        logger.warning(
            "dead_letter_recovery.retry_count_not_recorded",
            extra={"component": "admin", "kind": kind, "dead_letter_id": dead_letter_id, "actor_id": actor_id},
        )
        updated = await _get_dead_letter(kind, dead_letter_id)

    logger.info(
        "dead_letter_recovery.retried",
        extra={
            "component": "admin",
            "kind": kind,
            "dead_letter_id": dead_letter_id,
            "actor_id": actor_id,
            "previous_status": previous_status,
            "manual_retry_count": updated.get("manual_retry_count"),
        },
    )
    await _record_audit("retry", kind, dead_letter_id, actor_id, previous_status=previous_status)
    return updated


async def retry_many(kind: str, actor_id: str, limit: int = 50) -> RetryManySummary:
    summary = RetryManySummary()
    rows = await select_dead_letters(_require_kind(kind), limit=min(200, max(1, limit)), include_suppressed=False)
    for row in rows:
        dead_letter_id = str(row.get("id") or "")
        if not dead_letter_id:
            continue
        try:
            await retry(kind, dead_letter_id, actor_id)
        except (DeadLetterConflictError, DeadLetterNotFoundError, SourceRecordNotFoundError) as exc:
            summary.skipped.append({"id": dead_letter_id, "reason": str(exc)})
            continue
        summary.retried.append(dead_letter_id)
    return summary
