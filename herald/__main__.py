from __future__ import annotations

import asyncio
import time

import uvicorn

from herald.core.logging import configure_logging, get_logger
from herald.core.settings import get_settings
from herald.core.supabase_rest import upsert_system_status
from herald.core.timeutils import to_iso, utc_now
from herald.worker.dispatcher import JobDispatcher
from herald.worker.event_processor import EventProcessor
from herald.worker.retry import sanitize_error

logger = get_logger("worker.supervisor")

DISPATCH_CHANNELS = ("email", "push", "in_app")


def _due(last_runs: dict[str, float], key: str, interval_seconds: int, now: float) -> bool:
    last = last_runs.get(key)
    return last is None or now - last >= interval_seconds


async def run_worker_tick(
    event_processor: EventProcessor,
    dispatchers: dict[str, JobDispatcher],
    *,
    last_runs: dict[str, float],
    heartbeat_enabled: bool,
    monotonic=time.monotonic,
) -> dict[str, object]:
    settings = get_settings()
    tick_started_at = to_iso(utc_now())
    errors = 0
    events_processed = 0
    jobs_sent = 0
    jobs_requeued = 0
    jobs_failed = 0
    dispatch_results: dict[str, dict[str, object]] = {}

    if _due(last_runs, "events", settings.EVENT_SWEEP_INTERVAL_SECONDS, monotonic()):
        last_runs["events"] = monotonic()
        try:
            sweep = await event_processor.run_once()
            events_processed = sweep.processed
        except Exception as exc:
            errors += 1
            logger.error(
                "worker.tick_process_events_error",
                extra={"component": "worker", "error": sanitize_error(exc, default_message="worker error")},
            )

    for channel, dispatcher in dispatchers.items():
        key = f"dispatch:{channel}"
        if not _due(last_runs, key, settings.DISPATCH_INTERVAL_SECONDS, monotonic()):
            continue
        last_runs[key] = monotonic()
        try:
            stats = await dispatcher.run_once()
        except Exception as exc:
            errors += 1
            logger.error(
                "worker.tick_dispatch_error",
                extra={
                    "component": "worker",
                    "channel": channel,
                    "error": sanitize_error(exc, default_message="worker error"),
                },
            )
            continue
        dispatch_results[channel] = stats.as_dict()
        jobs_sent += stats.sent
        jobs_requeued += stats.requeued
        jobs_failed += stats.failed

    payload: dict[str, object] = {
        "mode": "worker",
        "tick_started_at": tick_started_at,
        "tick_finished_at": to_iso(utc_now()),
        "events_processed": events_processed,
        "jobs_sent": jobs_sent,
        "jobs_requeued": jobs_requeued,
        "jobs_failed": jobs_failed,
        "dispatch": dispatch_results,
        "errors": errors,
    }

    if heartbeat_enabled:
        try:
            await upsert_system_status("notification_worker", payload)
        except Exception as exc:
            logger.error(
                "worker.heartbeat_error",
                extra={
                    "component": "worker",
                    "error": sanitize_error(exc, default_message="worker heartbeat error"),
                },
            )

    return payload


async def run_worker_supervisor_loop() -> None:
    settings = get_settings()
    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY must be configured for worker mode")

    event_processor = EventProcessor()
    dispatchers = {channel: JobDispatcher(channel) for channel in DISPATCH_CHANNELS}
    last_runs: dict[str, float] = {}

    while True:
        payload = await run_worker_tick(
            event_processor,
            dispatchers,
            last_runs=last_runs,
            heartbeat_enabled=True,
        )

        if (
            int(payload.get("events_processed") or 0) == 0
            and int(payload.get("jobs_sent") or 0) == 0
            and int(payload.get("jobs_requeued") or 0) == 0
            and int(payload.get("jobs_failed") or 0) == 0
        ):
            await asyncio.sleep(max(1, settings.WORKER_POLL_INTERVAL_SECONDS))


def main() -> None:
    configure_logging()
    settings = get_settings()
    mode = settings.HERALD_MODE.strip().lower()

    if mode == "worker":
        asyncio.run(run_worker_supervisor_loop())
        return

    uvicorn.run("herald.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
