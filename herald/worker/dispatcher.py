from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from herald.core.logging import get_logger
from herald.core.settings import get_settings
from herald.core.supabase_rest import (
    compare_and_set_job,
    select_job_by_id,
    select_queued_jobs,
    select_stale_processing_jobs,
)
from herald.core.timeutils import parse_utc_timestamp, to_iso, utc_now
from herald.notifications.emailer import EmailNotConfiguredError, EmailRejectedError
from herald.notifications.push import PushNotConfiguredError, PushSendError
from herald.notifications.templates import TemplateValidationError
from herald.worker.dead_letters import quarantine
from herald.worker.providers import ChannelProvider, DeliveryValidationError, default_provider
from herald.worker.retry import in_backoff_window, next_attempt_at, sanitize_error
from herald.worker.suppressor import should_suppress

logger = get_logger("worker.dispatcher")

MAX_ATTEMPTS_ERROR = "Max attempts reached"
STALE_LOCK_ERROR = "Processing lock expired before the attempt finished"
_SENT_WRITE_ATTEMPTS = 3
_CLAIMED_OUTCOMES = {"sent", "skipped", "requeued", "failed"}


@dataclass
class DispatchStats:
    channel: str
    scanned: int = 0
    claimed: int = 0
    sent: int = 0
    skipped: int = 0
    requeued: int = 0
    failed: int = 0
    deferred: int = 0
    reclaimed: int = 0
    budget_exhausted: bool = False

    def record(self, outcome: str) -> None:
        if outcome in _CLAIMED_OUTCOMES:
            self.claimed += 1
        if outcome in {"failed", "exhausted"}:
            self.failed += 1
        elif outcome in {"sent", "skipped", "requeued", "deferred"}:
            setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _Failure:
    retryable: bool
    code: str
    message: str


def _safe_int(value: object | None) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return 0
    return 0


def _classify_failure(exc: Exception) -> _Failure:
    if isinstance(exc, DeliveryValidationError | TemplateValidationError):
        return _Failure(False, exc.error_code, sanitize_error(exc, default_message="invalid job"))
    if isinstance(exc, EmailRejectedError) or (isinstance(exc, PushSendError) and exc.permanent):
        message = sanitize_error(exc, default_message="provider rejected message")
        return _Failure(False, "provider_rejected", message)
    if isinstance(exc, EmailNotConfiguredError | PushNotConfiguredError):
        return _Failure(True, "not_configured", sanitize_error(exc, default_message="provider not configured"))
    return _Failure(True, "provider_error", sanitize_error(exc, default_message="delivery failed"))


class JobDispatcher:
    """Claims queued Jobs of one channel and drives each to its next state.

    Every transition is a compare-and-swap on (status, attempts), so two
    dispatchers running over the same queue never deliver a Job twice.
    """

    def __init__(
        self,
        channel: str,
        *,
        provider: ChannelProvider | None = None,
        batch_limit: int | None = None,
        max_attempts: int | None = None,
        backoff_schedule: tuple[int, ...] | None = None,
        lock_seconds: int | None = None,
        time_budget_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.channel = channel
        self.provider = provider or default_provider(channel)
        self.batch_limit = max(1, batch_limit or settings.channel_batch_limit(channel))
        self.max_attempts = max(1, max_attempts or settings.NOTIFY_MAX_ATTEMPTS)
        self.backoff_schedule = backoff_schedule or settings.channel_backoff_schedule(channel)
        self.lock_seconds = max(1, lock_seconds or settings.JOB_PROCESSING_LOCK_SECONDS)
        self.time_budget_seconds = (
            time_budget_seconds if time_budget_seconds is not None else settings.RUN_TIME_BUDGET_SECONDS
        )
        self.clock = clock
        self.monotonic = monotonic

    async def run_once(self, *, limit: int | None = None) -> DispatchStats:
        stats = DispatchStats(channel=self.channel)
        started = self.monotonic()
        batch = max(1, limit or self.batch_limit)
        await self._reclaim_stale(stats, batch)
        jobs = await select_queued_jobs(self.channel, limit=batch, due_before=to_iso(self.clock()))
        stats.scanned = len(jobs)

        for job in jobs:
            if self.monotonic() - started >= self.time_budget_seconds:
                stats.budget_exhausted = True
                logger.info(
                    "dispatcher.time_budget_exhausted",
                    extra={"component": "worker", "channel": self.channel, "scanned": stats.scanned},
                )
                break
            try:
                outcome = await self._process_job(job)
            except Exception as exc:
                logger.error(
                    "dispatcher.job_error",
                    extra={
                        "component": "worker",
                        "channel": self.channel,
                        "job_id": job.get("id"),
                        "error": sanitize_error(exc, default_message="job processing error"),
                    },
                )
                continue
            stats.record(outcome)

        if stats.scanned or stats.reclaimed:
            logger.info(
                "dispatcher.run_completed",
                extra={"component": "worker", **stats.as_dict()},
            )
        return stats

    async def dispatch_job_now(self, job_id: str) -> str:
        """Best-effort immediate delivery of one queued Job, ignoring its deliver-after time."""
        job = await select_job_by_id(self.channel, job_id)
        if job is None:
            return "missing"
        return await self._process_job(job, ignore_deliver_after=True)

    async def _process_job(self, job: dict[str, Any], *, ignore_deliver_after: bool = False) -> str:
        job_id = str(job.get("id") or "").strip()
        if not job_id:
            return "not_queued"

        claimed = await self._claim(job_id, job, ignore_deliver_after=ignore_deliver_after)
        if isinstance(claimed, str):
            return claimed

        attempts = _safe_int(claimed.get("attempts"))
        request_id = f"notify-{self.channel}-{job_id}"

        if await should_suppress(claimed, self.clock()):
            await self._transition(
                job_id,
                attempts,
                {"status": "skipped", "error": None, "error_code": "engaged"},
            )
            logger.info(
                "dispatcher.job_suppressed",
                extra={"component": "worker", "channel": self.channel, "job_id": job_id},
            )
            return "skipped"

        try:
            self.provider.validate(claimed)
            result = await self.provider.deliver(claimed, request_id=request_id)
        except Exception as exc:
            failure = _classify_failure(exc)
            return await self._handle_failure(claimed, job_id, attempts, failure)

        await self._record_sent(job_id, attempts, result.provider_message_id)
        logger.info(
            "dispatcher.job_sent",
            extra={
                "component": "worker",
                "request_id": request_id,
                "channel": self.channel,
                "job_id": job_id,
                "attempts": attempts,
            },
        )
        return "sent"

    async def _claim(
        self,
        job_id: str,
        job: dict[str, Any],
        *,
        ignore_deliver_after: bool,
    ) -> dict[str, Any] | str:
        if str(job.get("status") or "") != "queued":
            return "not_queued"

        now = self.clock()
        attempts = _safe_int(job.get("attempts"))

        if attempts >= self.max_attempts:
            failed = await self._fail(
                job,
                expected_status="queued",
                attempts=attempts,
                code="max_attempts",
                message=MAX_ATTEMPTS_ERROR,
            )
            return "exhausted" if failed is not None else "lost_race"

        deliver_after_at = parse_utc_timestamp(job.get("deliver_after_at"))
        if not ignore_deliver_after and deliver_after_at is not None and deliver_after_at > now:
            return "deferred"

        last_attempt_at = parse_utc_timestamp(job.get("last_attempt_at"))
        if in_backoff_window(now, last_attempt_at, attempts, self.backoff_schedule):
            return "deferred"

        patch: dict[str, Any] = {
            "status": "processing",
            "attempts": attempts + 1,
            "last_attempt_at": to_iso(now),
        }
        if ignore_deliver_after:
            patch["deliver_after_at"] = None
        claimed = await compare_and_set_job(
            self.channel,
            job_id,
            expected_status="queued",
            expected_attempts=attempts,
            patch=patch,
        )
        if claimed is None:
            return "lost_race"
        return claimed

    async def _handle_failure(
        self,
        job: dict[str, Any],
        job_id: str,
        attempts: int,
        failure: _Failure,
    ) -> str:
        log_extra = {
            "component": "worker",
            "channel": self.channel,
            "job_id": job_id,
            "attempts": attempts,
            "error_code": failure.code,
            "error": failure.message,
        }

        if failure.retryable and attempts < self.max_attempts:
            await self._transition(
                job_id,
                attempts,
                {
                    "status": "queued",
                    "error": failure.message,
                    "error_code": failure.code,
                    "deliver_after_at": self._retry_due_at(job, attempts),
                },
            )
            logger.warning("dispatcher.job_requeued", extra=log_extra)
            return "requeued"

        await self._fail(
            job,
            expected_status="processing",
            attempts=attempts,
            code=failure.code,
            message=failure.message,
        )
        logger.warning("dispatcher.job_failed", extra=log_extra)
        return "failed"

    def _retry_due_at(self, job: dict[str, Any], attempts: int) -> str:
        last_attempt_at = parse_utc_timestamp(job.get("last_attempt_at")) or self.clock()
        due_at = next_attempt_at(last_attempt_at, attempts, self.backoff_schedule) or last_attempt_at
        return to_iso(due_at)

    async def _fail(
        self,
        job: dict[str, Any],
        *,
        expected_status: str,
        attempts: int,
        code: str,
        message: str,
    ) -> dict[str, Any] | None:
        """Quarantine ``job`` and then mark it failed.

        The dead letter is written first and is keyed by the Job id. If the
        insert raises, the Job keeps its current status and a later run (or
        the stale-lock reclaim) gets another chance to quarantine it.
        """
        job_id = str(job["id"])
        patch = {"status": "failed", "error": message, "error_code": code}
        await quarantine(self.channel, {**job, **patch}, {"code": code, "message": message})
        failed = await compare_and_set_job(
            self.channel,
            job_id,
            expected_status=expected_status,
            expected_attempts=attempts,
            patch=patch,
        )
        if failed is None:
            logger.warning(
                "dispatcher.transition_lost",
                extra={
                    "component": "worker",
                    "channel": self.channel,
                    "job_id": job_id,
                    "target_status": "failed",
                },
            )
        return failed

    async def _record_sent(self, job_id: str, attempts: int, provider_message_id: str | None) -> None:
        patch = {
            "status": "sent",
            "provider_message_id": provider_message_id,
            "sent_at": to_iso(self.clock()),
            "error": None,
            "error_code": None,
        }
        for write_attempt in range(1, _SENT_WRITE_ATTEMPTS + 1):
            try:
                await self._transition(job_id, attempts, patch)
                return
            except Exception as exc:
                logger.error(
                    "dispatcher.sent_write_failed",
                    extra={
                        "component": "worker",
                        "channel": self.channel,
                        "job_id": job_id,
                        "provider_message_id": provider_message_id,
                        "write_attempt": write_attempt,
                        "error": sanitize_error(exc, default_message="job write failed"),
                    },
                )
        # The message is out; the stale-lock reclaim will pick the Job up again.

    async def _reclaim_stale(self, stats: DispatchStats, limit: int) -> None:
        now = self.clock()
        stale_before = now - timedelta(seconds=self.lock_seconds)
        jobs = await select_stale_processing_jobs(self.channel, to_iso(stale_before), limit=limit)
        for job in jobs:
            try:
                outcome = await self._reclaim_job(job, stale_before)
            except Exception as exc:
                logger.error(
                    "dispatcher.reclaim_error",
                    extra={
                        "component": "worker",
                        "channel": self.channel,
                        "job_id": job.get("id"),
                        "error": sanitize_error(exc, default_message="job reclaim error"),
                    },
                )
                continue
            if outcome in {"requeued", "failed"}:
                stats.reclaimed += 1
            if outcome == "failed":
                stats.failed += 1

    async def _reclaim_job(self, job: dict[str, Any], stale_before: datetime) -> str:
        job_id = str(job.get("id") or "").strip()
        last_attempt_at = parse_utc_timestamp(job.get("last_attempt_at"))
        if not job_id or str(job.get("status") or "") != "processing":
            return "not_processing"
        if last_attempt_at is None or last_attempt_at >= stale_before:
            return "locked"

        attempts = _safe_int(job.get("attempts"))
        log_extra = {"component": "worker", "channel": self.channel, "job_id": job_id, "attempts": attempts}
        if attempts >= self.max_attempts:
            failed = await self._fail(
                job,
                expected_status="processing",
                attempts=attempts,
                code="stale_lock",
                message=STALE_LOCK_ERROR,
            )
            if failed is None:
                return "lost_race"
            logger.warning("dispatcher.stale_job_failed", extra=log_extra)
            return "failed"

        requeued = await compare_and_set_job(
            self.channel,
            job_id,
            expected_status="processing",
            expected_attempts=attempts,
            patch={
                "status": "queued",
                "error": STALE_LOCK_ERROR,
                "error_code": "stale_lock",
                "deliver_after_at": self._retry_due_at(job, attempts),
            },
        )
        if requeued is None:
            return "lost_race"
        logger.warning("dispatcher.stale_job_requeued", extra=log_extra)
        return "requeued"

    async def _transition(self, job_id: str, attempts: int, patch: dict[str, Any]) -> dict[str, Any] | None:
        updated = await compare_and_set_job(
            self.channel,
            job_id,
            expected_status="processing",
            expected_attempts=attempts,
            patch=patch,
        )
        if updated is None:
            logger.warning(
                "dispatcher.transition_lost",
                extra={
                    "component": "worker",
                    "channel": self.channel,
                    "job_id": job_id,
                    "target_status": patch.get("status"),
                },
            )
        return updated
