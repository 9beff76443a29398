from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from herald.core.logging import get_logger
from herald.core.settings import get_settings
from herald.core.supabase_rest import (
    compare_and_set_event,
    insert_job_if_absent,
    select_event_by_id,
    select_pending_events,
    select_stale_processing_events,
    select_user_contact,
    select_user_push_tokens,
)
from herald.core.timeutils import parse_utc_timestamp, to_iso, utc_now
from herald.notifications.preferences import NotificationPreferences, load_user_preferences
from herald.notifications.rules import decide_channels
from herald.notifications.templates import template_for_event
from herald.worker.dead_letters import quarantine
from herald.worker.retry import in_backoff_window, sanitize_error

logger = get_logger("worker.event_processor")

PreferencesLoader = Callable[[str], Awaitable[NotificationPreferences]]

MAX_ATTEMPTS_ERROR = "Max attempts reached"
_JOB_ID_NAMESPACE = uuid.UUID("8f0d7c1e-4b2a-5e39-9a61-3c5d2f7b8e40")


@dataclass
class ProcessResult:
    ok: bool
    error: str | None = None
    jobs_created: int = 0
    jobs_existing: int = 0
    omissions: list[str] = field(default_factory=list)


@dataclass
class EventSweepStats:
    scanned: int = 0
    claimed: int = 0
    reclaimed: int = 0
    processed: int = 0
    requeued: int = 0
    failed: int = 0
    deferred: int = 0
    budget_exhausted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def job_id_for(event_id: str, user_id: str, channel: str) -> str:
    return str(uuid.uuid5(_JOB_ID_NAMESPACE, f"{event_id}:{user_id}:{channel}"))


def _processing_state(event: dict[str, Any]) -> dict[str, Any]:
    processing = event.get("processing")
    return dict(processing) if isinstance(processing, dict) else {}


def _attempts(event: dict[str, Any]) -> int:
    value = _processing_state(event).get("attempts")
    if isinstance(value, int):
        return value
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _target_user_ids(event: dict[str, Any]) -> list[str]:
    targets = event.get("target_user_ids")
    if not isinstance(targets, list):
        return []
    ordered: list[str] = []
    for user_id in targets:
        text = str(user_id or "").strip()
        if text and text not in ordered:
            ordered.append(text)
    return ordered


async def _resolve_destination(channel: str, user_id: str) -> str | None:
    if channel == "in_app":
        return user_id
    if channel == "email":
        contact = await select_user_contact(user_id)
        email = (contact or {}).get("email")
        return email.strip() if isinstance(email, str) and email.strip() else None
    if channel == "push":
        for row in await select_user_push_tokens(user_id):
            token = row.get("token")
            if isinstance(token, str) and token.strip():
                return token.strip()
        return None
    return None


async def process_pending(
    event: dict[str, Any],
    *,
    now: datetime | None = None,
    preferences_loader: PreferencesLoader = load_user_preferences,
) -> ProcessResult:
    """Fan one claimed Event out into per-user, per-channel Jobs.

    Job ids derive from (event, user, channel) and are written
    create-if-absent, so a re-run after a partial failure only fills the
    gaps. A user whose preferences cannot be loaded is skipped and noted;
    any failed Job write makes the whole result not ok.
    """
    now = now or utc_now()
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}
    result = ProcessResult(ok=True)
    errors: list[str] = []

    try:
        template = template_for_event(event_type)
    except ValueError as exc:
        return ProcessResult(ok=False, error=str(exc))

    for user_id in _target_user_ids(event):
        try:
            prefs = await preferences_loader(user_id)
        except Exception as exc:
            result.omissions.append(f"{user_id}: preferences unavailable")
            logger.warning(
                "event_processor.preferences_failed",
                extra={
                    "component": "worker",
                    "event_id": event_id,
                    "user_id": user_id,
                    "error": sanitize_error(exc, default_message="preference lookup failed"),
                },
            )
            continue

        decision = decide_channels(event_type, payload, prefs, now)
        for channel in decision.enabled_channels():
            try:
                destination = await _resolve_destination(channel, user_id)
                if destination is None:
                    result.omissions.append(f"{user_id}: no {channel} destination")
                    continue

                delay = decision.channels[channel].deliver_after_seconds
                row = {
                    "id": job_id_for(event_id, user_id, channel),
                    "event_id": event_id,
                    "user_id": user_id,
                    "channel": channel,
                    "template": template,
                    "template_payload": payload,
                    "destination": destination,
                    "status": "queued",
                    "attempts": 0,
                    "last_attempt_at": None,
                    "deliver_after_at": to_iso(now + timedelta(seconds=delay)) if delay else None,
                    "error": None,
                    "error_code": None,
                    "provider_message_id": None,
                    "test": bool(event.get("test", False)),
                    "created_at": to_iso(now),
                }
                inserted = await insert_job_if_absent(channel, row)
            except Exception as exc:
                errors.append(
                    f"{user_id}/{channel}: {sanitize_error(exc, default_message='job write failed')}"
                )
                continue
            if inserted is None:
                result.jobs_existing += 1
            else:
                result.jobs_created += 1

    if errors:
        result.ok = False
        result.error = "; ".join(errors)[:500]
    elif result.omissions:
        result.error = "; ".join(result.omissions)[:500]
    return result


class EventProcessor:
    def __init__(
        self,
        *,
        batch_limit: int | None = None,
        max_attempts: int | None = None,
        backoff_schedule: tuple[int, ...] | None = None,
        lock_seconds: int | None = None,
        time_budget_seconds: float | None = None,
        preferences_loader: PreferencesLoader = load_user_preferences,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.batch_limit = max(1, batch_limit or settings.EVENT_BATCH_LIMIT)
        self.max_attempts = max(1, max_attempts or settings.NOTIFY_MAX_ATTEMPTS)
        self.backoff_schedule = backoff_schedule or settings.event_backoff_schedule
        self.lock_seconds = max(1, lock_seconds or settings.EVENT_PROCESSING_LOCK_SECONDS)
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None else settings.RUN_TIME_BUDGET_SECONDS
        )
        self.preferences_loader = preferences_loader
        self.clock = clock
        self.monotonic = monotonic

    async def run_once(self, *, limit: int | None = None) -> EventSweepStats:
        stats = EventSweepStats()
        started = self.monotonic()
        batch = max(1, limit or self.batch_limit)
        stale_before = to_iso(self.clock() - timedelta(seconds=self.lock_seconds))

        pending = await select_pending_events(limit=batch)
        stale = await select_stale_processing_events(stale_before, limit=batch)
        candidates = sorted(pending + stale, key=lambda row: str(row.get("created_at") or ""))[:batch]
        stats.scanned = len(candidates)

        for event in candidates:
            if self.monotonic() - started >= self.time_budget_seconds:
                stats.budget_exhausted = True
                logger.info(
                    "event_processor.time_budget_exhausted",
                    extra={"component": "worker", "scanned": stats.scanned},
                )
                break
            try:
                outcome = await self.process_event(event)
            except Exception as exc:
                logger.error(
                    "event_processor.event_error",
                    extra={
                        "component": "worker",
                        "event_id": event.get("id"),
                        "error": sanitize_error(exc, default_message="event processing error"),
                    },
                )
                continue

            if outcome in {"processed", "requeued", "failed"}:
                stats.claimed += 1
                if str(event.get("status") or "") == "processing":
                    stats.reclaimed += 1
            if outcome in {"processed", "requeued", "deferred"}:
                setattr(stats, outcome, getattr(stats, outcome) + 1)
            elif outcome in {"failed", "exhausted"}:
                stats.failed += 1

        if stats.scanned:
            logger.info(
                "event_processor.run_completed",
                extra={"component": "worker", **stats.as_dict()},
            )
        return stats

    async def process_event_now(self, event_id: str) -> str:
        event = await select_event_by_id(event_id)
        if event is None:
            return "missing"
        return await self.process_event(event)

    async def process_event(self, event: dict[str, Any]) -> str:
        event_id = str(event.get("id") or "").strip()
        if not event_id:
            return "not_pending"

        claimed = await self._claim(event_id, event)
        if isinstance(claimed, str):
            return claimed

        attempts = _attempts(claimed)
        try:
            result = await process_pending(
                claimed,
                now=self.clock(),
                preferences_loader=self.preferences_loader,
            )
        except Exception as exc:
            result = ProcessResult(ok=False, error=sanitize_error(exc, default_message="event processing failed"))

        processing = {**_processing_state(claimed), "attempts": attempts, "error": result.error}
        if result.ok:
            await compare_and_set_event(
                event_id,
                expected_status="processing",
                expected_attempts=attempts,
                patch={"status": "processed", "processing": processing, "processed_at": to_iso(self.clock())},
            )
            logger.info(
                "event_processor.event_processed",
                extra={
                    "component": "worker",
                    "event_id": event_id,
                    "event_type": claimed.get("type"),
                    "jobs_created": result.jobs_created,
                    "jobs_existing": result.jobs_existing,
                    "omissions": len(result.omissions),
                },
            )
            return "processed"

        error_text = result.error or "Processing failed"
        if attempts >= self.max_attempts:
            await self._fail(
                claimed,
                expected_status="processing",
                attempts=attempts,
                processing=processing,
                error={"code": "processing_failed", "message": error_text},
            )
            logger.warning(
                "event_processor.event_failed",
                extra={"component": "worker", "event_id": event_id, "attempts": attempts, "error": error_text},
            )
            return "failed"

        await compare_and_set_event(
            event_id,
            expected_status="processing",
            expected_attempts=attempts,
            patch={"status": "pending", "processing": processing},
        )
        logger.warning(
            "event_processor.event_requeued",
            extra={"component": "worker", "event_id": event_id, "attempts": attempts, "error": error_text},
        )
        return "requeued"

    async def _claim(self, event_id: str, event: dict[str, Any]) -> dict[str, Any] | str:
        current_status = str(event.get("status") or "")
        now = self.clock()
        processing = _processing_state(event)
        attempts = _attempts(event)
        last_attempt_at = parse_utc_timestamp(processing.get("last_attempt_at"))

        if current_status == "processing":
            # Only a run that outlived its lock may be taken over.
            if last_attempt_at is not None and now - last_attempt_at < timedelta(seconds=self.lock_seconds):
                return "locked"
        elif current_status != "pending":
            return "not_pending"

        if attempts >= self.max_attempts:
            failed = await self._fail(
                event,
                expected_status=current_status,
                attempts=attempts,
                processing={**processing, "error": MAX_ATTEMPTS_ERROR},
                error={"code": "max_attempts", "message": MAX_ATTEMPTS_ERROR},
            )
            if failed is None:
                return "lost_race"
            logger.warning(
                "event_processor.event_exhausted",
                extra={"component": "worker", "event_id": event_id, "attempts": attempts},
            )
            return "exhausted"

        if current_status == "pending" and in_backoff_window(now, last_attempt_at, attempts, self.backoff_schedule):
            return "deferred"

        claimed = await compare_and_set_event(
            event_id,
            expected_status=current_status,
            expected_attempts=attempts,
            patch={
                "status": "processing",
                "processing": {
                    "attempts": attempts + 1,
                    "last_attempt_at": to_iso(now),
                    "error": processing.get("error"),
                },
            },
        )
        if claimed is None:
            return "lost_race"
        return claimed

    async def _fail(
        self,
        event: dict[str, Any],
        *,
        expected_status: str,
        attempts: int,
        processing: dict[str, Any],
        error: dict[str, Any],
    ) -> dict[str, Any] | None:
        # Every failed Event has a dead letter, so the dead letter is written first.
        patch = {"status": "failed", "processing": processing}
        await quarantine("event", {**event, **patch}, error)
        return await compare_and_set_event(
            str(event["id"]),
            expected_status=expected_status,
            expected_attempts=attempts,
            patch=patch,
        )
