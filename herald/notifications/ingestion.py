from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from herald.core.logging import get_logger
from herald.core.supabase_rest import insert_event_if_absent, select_event_by_key
from herald.core.timeutils import to_iso, utc_now
from herald.notifications.event_key import derive_event_key
from herald.notifications.types import ENTITY_TYPES, EventValidationError, validate_event_payload
from herald.worker.event_processor import EventProcessor
from herald.worker.retry import sanitize_error

logger = get_logger("notifications.ingestion")


@dataclass(frozen=True)
class IngestResult:
    created: bool
    event_id: str


@dataclass(frozen=True)
class EmitResult:
    ok: bool
    created: bool
    event_id: str
    event_key: str
    processed: str | None = None


def _normalized_targets(target_user_ids: Iterable[str]) -> list[str]:
    ordered: list[str] = []
    for user_id in target_user_ids:
        text = str(user_id or "").strip()
        if text and text not in ordered:
            ordered.append(text)
    return ordered


async def ingest(
    event_type: str,
    payload: dict[str, Any],
    target_user_ids: Iterable[str],
    event_key: str,
    *,
    entity_type: str,
    entity_id: str,
    actor_id: str | None = None,
    test: bool = False,
) -> IngestResult:
    """Record one Event per idempotency key.

    Validation happens before any write. When the key already exists the
    existing Event's id comes back with ``created=False`` and nothing else
    is written.
    """
    targets = _normalized_targets(target_user_ids)
    if not targets:
        raise EventValidationError("target_user_ids must not be empty")
    if entity_type not in ENTITY_TYPES:
        raise EventValidationError(f"Unknown entity type: {entity_type}")
    if not str(entity_id or "").strip():
        raise EventValidationError("entity_id must not be empty")
    if not event_key.strip():
        raise EventValidationError("event_key must not be empty")
    normalized_payload = validate_event_payload(event_type, payload)

    row = {
        "id": str(uuid.uuid4()),
        "type": event_type,
        "payload": normalized_payload,
        "target_user_ids": targets,
        "actor_id": actor_id,
        "entity_type": entity_type,
        "entity_id": str(entity_id).strip(),
        "status": "pending",
        "event_key": event_key,
        "processing": {"attempts": 0, "last_attempt_at": None, "error": None},
        "test": test,
        "created_at": to_iso(utc_now()),
    }
    inserted = await insert_event_if_absent(row)
    if inserted is not None:
        logger.info(
            "ingestion.event_created",
            extra={
                "component": "ingestion",
                "event_id": inserted.get("id", row["id"]),
                "event_type": event_type,
                "targets": len(targets),
            },
        )
        return IngestResult(created=True, event_id=str(inserted.get("id") or row["id"]))

    existing = await select_event_by_key(event_key)
    if existing is None:
        raise RuntimeError(f"Event with key {event_key} was neither created nor found.")
    logger.info(
        "ingestion.event_deduplicated",
        extra={"component": "ingestion", "event_id": existing.get("id"), "event_type": event_type},
    )
    return IngestResult(created=False, event_id=str(existing.get("id")))


async def emit(
    event_type: str,
    *,
    entity_type: str,
    entity_id: str,
    target_user_ids: Iterable[str],
    payload: dict[str, Any],
    discriminator: str | int | float | None = None,
    actor_id: str | None = None,
    test: bool = False,
) -> EmitResult:
    targets = _normalized_targets(target_user_ids)
    event_key = derive_event_key(event_type, entity_type, entity_id, targets, discriminator)
    result = await ingest(
        event_type,
        payload,
        targets,
        event_key,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        test=test,
    )
    return EmitResult(ok=True, created=result.created, event_id=result.event_id, event_key=event_key)


async def emit_and_process(
    event_type: str,
    *,
    entity_type: str,
    entity_id: str,
    target_user_ids: Iterable[str],
    payload: dict[str, Any],
    discriminator: str | int | float | None = None,
    actor_id: str | None = None,
    test: bool = False,
) -> EmitResult:
    """Emit, then fan the new Event out immediately instead of waiting for the sweep.

    Fan-out errors are logged and the Event stays pending for the sweep.
    """
    emitted = await emit(
        event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        target_user_ids=target_user_ids,
        payload=payload,
        discriminator=discriminator,
        actor_id=actor_id,
        test=test,
    )
    if not emitted.created:
        return emitted

    try:
        outcome = await EventProcessor().process_event_now(emitted.event_id)
    except Exception as exc:
        logger.warning(
            "ingestion.inline_processing_failed",
            extra={
                "component": "ingestion",
                "event_id": emitted.event_id,
                "error": sanitize_error(exc, default_message="inline processing failed"),
            },
        )
        return emitted
    return EmitResult(
        ok=True,
        created=True,
        event_id=emitted.event_id,
        event_key=emitted.event_key,
        processed=outcome,
    )
