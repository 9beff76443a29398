"""In-memory stand-in for herald.core.supabase_rest.

Each coroutine yields to the event loop before touching state, so tests can
interleave concurrent callers with asyncio.gather; every conditional write
checks and applies its filter without yielding in between, which is what the
single-statement PostgREST PATCH guarantees in production.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from herald.core.timeutils import parse_utc_timestamp, to_iso, utc_now

PATCHED_MODULES = (
    "herald.notifications.ingestion",
    "herald.notifications.preferences",
    "herald.worker.event_processor",
    "herald.worker.dispatcher",
    "herald.worker.dead_letters",
    "herald.worker.suppressor",
    "herald.worker.providers",
    "herald.services.dead_letter_recovery",
    "herald.__main__",
)

STORE_FUNCTIONS = (
    "insert_event_if_absent",
    "select_event_by_key",
    "select_event_by_id",
    "select_pending_events",
    "select_stale_processing_events",
    "compare_and_set_event",
    "update_event",
    "insert_job_if_absent",
    "select_queued_jobs",
    "select_stale_processing_jobs",
    "select_job_by_id",
    "compare_and_set_job",
    "update_job",
    "insert_dead_letter_if_absent",
    "select_dead_letter",
    "select_dead_letters",
    "update_dead_letter",
    "compare_and_set_dead_letter",
    "select_user_notification_preferences",
    "select_user_contact",
    "select_user_push_tokens",
    "upsert_in_app_notification",
    "select_in_app_notification",
    "record_audit_event",
    "upsert_system_status",
)


class FakeStore:
    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, dict[str, Any]]] = {"email": {}, "push": {}, "in_app": {}}
        self.dead_letters: dict[str, dict[str, dict[str, Any]]] = {
            "event": {},
            "email": {},
            "push": {},
            "in_app": {},
        }
        self.preferences: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self.push_tokens: dict[str, list[dict[str, Any]]] = {}
        self.in_app_notifications: dict[str, dict[str, Any]] = {}
        self.audit_events: list[dict[str, Any]] = []
        self.system_status: dict[str, dict[str, Any]] = {}
        self.failing_job_channels: set[str] = set()
        self.failing_preference_users: set[str] = set()
        self.fail_in_app_lookup = False
        self.fail_audit = False
        self.fail_dead_letter_inserts = False
        self.failing_job_writes: dict[str, int] = {}
        self.event_insert_calls = 0

    # Events

    async def insert_event_if_absent(self, row: dict[str, Any]) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        self.event_insert_calls += 1
        if any(event["event_key"] == row["event_key"] for event in self.events.values()):
            return None
        self.events[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def select_event_by_key(self, event_key: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        for event in self.events.values():
            if event["event_key"] == event_key:
                return copy.deepcopy(event)
        return None

    async def select_event_by_id(self, event_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        event = self.events.get(event_id)
        return copy.deepcopy(event) if event is not None else None

    async def select_pending_events(self, limit: int = 50) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [event for event in self.events.values() if event["status"] == "pending"]
        rows.sort(key=lambda row: row["created_at"])
        return copy.deepcopy(rows[:limit])

    async def select_stale_processing_events(self, stale_before: str, limit: int = 50) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [
            event
            for event in self.events.values()
            if event["status"] == "processing"
            and (event.get("processing") or {}).get("last_attempt_at")
            and event["processing"]["last_attempt_at"] < stale_before
        ]
        rows.sort(key=lambda row: row["created_at"])
        return copy.deepcopy(rows[:limit])

    async def compare_and_set_event(
        self,
        event_id: str,
        *,
        expected_status: str,
        expected_attempts: int | None,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        event = self.events.get(event_id)
        if event is None or event["status"] != expected_status:
            return None
        if expected_attempts is not None and (event.get("processing") or {}).get("attempts", 0) != expected_attempts:
            return None
        event.update(copy.deepcopy(patch))
        event["updated_at"] = to_iso(utc_now())
        return copy.deepcopy(event)

    async def update_event(self, event_id: str, patch: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if event_id in self.events:
            self.events[event_id].update(copy.deepcopy(patch))

    # Jobs

    async def insert_job_if_absent(self, channel: str, row: dict[str, Any]) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        if channel in self.failing_job_channels:
            raise RuntimeError(f"{channel} job table unavailable")
        if row["id"] in self.jobs[channel]:
            return None
        self.jobs[channel][row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def select_queued_jobs(
        self,
        channel: str,
        limit: int = 50,
        *,
        due_before: str | None = None,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        cutoff = parse_utc_timestamp(due_before)
        rows = [
            job
            for job in self.jobs[channel].values()
            if job["status"] == "queued"
            and (
                cutoff is None
                or not job.get("deliver_after_at")
                or parse_utc_timestamp(job["deliver_after_at"]) <= cutoff
            )
        ]
        rows.sort(key=lambda row: row.get("created_at") or "")
        return copy.deepcopy(rows[:limit])

    async def select_stale_processing_jobs(
        self,
        channel: str,
        stale_before: str,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        cutoff = parse_utc_timestamp(stale_before)
        rows = [
            job
            for job in self.jobs[channel].values()
            if job["status"] == "processing"
            and job.get("last_attempt_at")
            and parse_utc_timestamp(job["last_attempt_at"]) < cutoff
        ]
        rows.sort(key=lambda row: row["last_attempt_at"])
        return copy.deepcopy(rows[:limit])

    async def select_job_by_id(self, channel: str, job_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        job = self.jobs[channel].get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def compare_and_set_job(
        self,
        channel: str,
        job_id: str,
        *,
        expected_status: str,
        expected_attempts: int | None,
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        target_status = patch.get("status")
        if self.failing_job_writes.get(target_status, 0) > 0:
            self.failing_job_writes[target_status] -= 1
            raise RuntimeError(f"{channel} job table unavailable")
        job = self.jobs[channel].get(job_id)
        if job is None or job["status"] != expected_status:
            return None
        if expected_attempts is not None and job.get("attempts", 0) != expected_attempts:
            return None
        job.update(copy.deepcopy(patch))
        job["updated_at"] = to_iso(utc_now())
        return copy.deepcopy(job)

    async def update_job(self, channel: str, job_id: str, patch: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if job_id in self.jobs[channel]:
            self.jobs[channel][job_id].update(copy.deepcopy(patch))

    # Dead letters

    async def insert_dead_letter_if_absent(self, kind: str, row: dict[str, Any]) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        if self.fail_dead_letter_inserts:
            raise RuntimeError("dead-letter table unavailable")
        if row["id"] in self.dead_letters[kind]:
            return None
        self.dead_letters[kind][row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def select_dead_letter(self, kind: str, dead_letter_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        row = self.dead_letters[kind].get(dead_letter_id)
        return copy.deepcopy(row) if row is not None else None

    async def select_dead_letters(
        self,
        kind: str,
        limit: int = 100,
        *,
        include_suppressed: bool = True,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [
            row for row in self.dead_letters[kind].values() if include_suppressed or not row.get("suppressed")
        ]
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        return copy.deepcopy(rows[:limit])

    async def update_dead_letter(self, kind: str, dead_letter_id: str, patch: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if dead_letter_id in self.dead_letters[kind]:
            self.dead_letters[kind][dead_letter_id].update(copy.deepcopy(patch))

    async def compare_and_set_dead_letter(
        self,
        kind: str,
        dead_letter_id: str,
        *,
        expected: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        row = self.dead_letters[kind].get(dead_letter_id)
        if row is None:
            return None
        for column, value in expected.items():
            if row.get(column) != value:
                return None
        row.update(copy.deepcopy(patch))
        return copy.deepcopy(row)

    # Collaborators

    async def select_user_notification_preferences(self, user_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        if user_id in self.failing_preference_users:
            raise RuntimeError("preferences store unavailable")
        row = self.preferences.get(user_id)
        return copy.deepcopy(row) if row is not None else None

    async def select_user_contact(self, user_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        row = self.contacts.get(user_id)
        return copy.deepcopy(row) if row is not None else None

    async def select_user_push_tokens(self, user_id: str) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return copy.deepcopy(self.push_tokens.get(user_id, []))

    async def upsert_in_app_notification(self, row: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        existing = self.in_app_notifications.setdefault(row["id"], {})
        existing.update(copy.deepcopy(row))

    async def select_in_app_notification(self, user_id: str, event_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        if self.fail_in_app_lookup:
            raise RuntimeError("feed store unavailable")
        for row in self.in_app_notifications.values():
            if row.get("user_id") == user_id and row.get("event_id") == event_id:
                return copy.deepcopy(row)
        return None

    async def record_audit_event(self, payload: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.fail_audit:
            raise RuntimeError("audit log unavailable")
        self.audit_events.append(copy.deepcopy(payload))

    async def upsert_system_status(self, status_id: str, payload: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self.system_status[status_id] = copy.deepcopy(payload)


def install(monkeypatch, store: FakeStore) -> FakeStore:
    """Point every module that imported a store function at ``store``."""
    import importlib

    for module_name in PATCHED_MODULES:
        module = importlib.import_module(module_name)
        for name in STORE_FUNCTIONS:
            if hasattr(module, name):
                monkeypatch.setattr(module, name, getattr(store, name))
    return store


def make_job(
    channel: str,
    *,
    job_id: str = "job-1",
    destination: str = "buyer@example.com",
    template: str = "order_approved",
    template_payload: dict[str, Any] | None = None,
    status: str = "queued",
    attempts: int = 0,
    last_attempt_at: str | None = None,
    deliver_after_at: str | None = None,
    event_id: str = "event-1",
    user_id: str = "user-1",
    created_at: str = "2026-03-01T12:00:00Z",
) -> dict[str, Any]:
    return {
        "id": job_id,
        "event_id": event_id,
        "user_id": user_id,
        "channel": channel,
        "template": template,
        "template_payload": template_payload if template_payload is not None else order_payload(),
        "destination": destination,
        "status": status,
        "attempts": attempts,
        "last_attempt_at": last_attempt_at,
        "deliver_after_at": deliver_after_at,
        "error": None,
        "error_code": None,
        "provider_message_id": None,
        "test": False,
        "created_at": created_at,
    }


def order_payload(order_id: str = "order-1") -> dict[str, Any]:
    return {
        "order_id": order_id,
        "listing_id": "listing-1",
        "listing_title": "Vintage Saddle",
        "order_url": f"https://market.example.com/orders/{order_id}",
    }
