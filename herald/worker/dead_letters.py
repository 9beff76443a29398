"""Dead-letter quarantine.

A dead letter is keyed by its source record's id, so quarantining the same
Event or Job twice never creates a second entry. The snapshot stored with
it is a redacted copy: delivery addresses are masked and payload bodies are
reduced to their keys, so operators can triage without seeing user data.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from herald.core.logging import get_logger
from herald.core.supabase_rest import insert_dead_letter_if_absent, select_dead_letter, update_dead_letter
from herald.core.timeutils import to_iso, utc_now
from herald.notifications.types import DEAD_LETTER_KINDS

logger = get_logger("worker.dead_letters")

MAX_SNAPSHOT_TARGETS = 25
MAX_DEAD_LETTER_MESSAGE_LENGTH = 2000

_EVENT_SNAPSHOT_FIELDS = ("type", "entity_type", "entity_id", "event_key", "actor_id", "status", "test", "created_at")
_JOB_SNAPSHOT_FIELDS = (
    "event_id",
    "user_id",
    "channel",
    "template",
    "status",
    "attempts",
    "last_attempt_at",
    "deliver_after_at",
    "error",
    "error_code",
    "test",
    "created_at",
)


def mask_email(value: str) -> str:
    text = value.strip()
    if "@" not in text:
        return "***"
    local, _, domain = text.rpartition("@")
    return f"{local[:1]}***@{domain}" if local else f"***@{domain}"


def mask_push_token(value: str) -> str:
    text = value.strip()
    return f"...{text[-6:]}" if len(text) > 6 else "***"


def _redacted_destination(channel: str, destination: object) -> str | None:
    if not isinstance(destination, str) or not destination.strip():
        return None
    if channel == "email":
        return mask_email(destination)
    if channel == "push":
        return mask_push_token(destination)
    return destination.strip()


def _payload_keys(value: object) -> list[str]:
    return sorted(str(key) for key in value) if isinstance(value, dict) else []


def _event_snapshot(source: dict[str, Any]) -> dict[str, Any]:
    snapshot = {field: source.get(field) for field in _EVENT_SNAPSHOT_FIELDS}
    targets = source.get("target_user_ids")
    targets = [str(user_id) for user_id in targets] if isinstance(targets, list) else []
    snapshot["target_user_ids"] = targets[:MAX_SNAPSHOT_TARGETS]
    snapshot["target_count"] = len(targets)
    snapshot["payload_keys"] = _payload_keys(source.get("payload"))
    processing = source.get("processing")
    snapshot["processing"] = dict(processing) if isinstance(processing, dict) else None
    return snapshot


def _job_snapshot(kind: str, source: dict[str, Any]) -> dict[str, Any]:
    snapshot = {field: source.get(field) for field in _JOB_SNAPSHOT_FIELDS}
    snapshot["channel"] = snapshot.get("channel") or kind
    snapshot["destination"] = _redacted_destination(kind, source.get("destination"))
    snapshot["template_payload_keys"] = _payload_keys(source.get("template_payload"))
    return snapshot


def _source_attempts(kind: str, source: dict[str, Any]) -> int:
    if kind == "event":
        processing = source.get("processing")
        value = processing.get("attempts") if isinstance(processing, dict) else 0
    else:
        value = source.get("attempts")
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def build_dead_letter(
    kind: str,
    source: dict[str, Any],
    error: dict[str, Any],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    if kind not in DEAD_LETTER_KINDS:
        raise ValueError(f"unknown dead-letter kind: {kind}")
    source_id = str(source.get("id") or "").strip()
    if not source_id:
        raise ValueError("dead-letter source must have an id")

    snapshot = _event_snapshot(source) if kind == "event" else _job_snapshot(kind, source)
    code = error.get("code")
    message = str(error.get("message") or "unknown error")[:MAX_DEAD_LETTER_MESSAGE_LENGTH]
    return {
        "id": source_id,
        "kind": kind,
        "snapshot": snapshot,
        "error": {"code": str(code) if code else None, "message": message},
        "attempts": _source_attempts(kind, source),
        "suppressed": False,
        "suppressed_at": None,
        "suppressed_by": None,
        "suppressed_reason": None,
        "manual_retry_count": 0,
        "last_manual_retry_at": None,
        "last_manual_retry_by": None,
        "created_at": to_iso(now or utc_now()),
    }


async def quarantine(
    kind: str,
    source: dict[str, Any],
    error: dict[str, Any],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Record ``source`` as a dead letter; refresh an existing entry in place.

    A refresh rewrites snapshot, error and attempts only, so operator state
    (suppression, manual retry counters) survives a re-quarantine.
    """
    row = build_dead_letter(kind, source, error, now=now)
    inserted = await insert_dead_letter_if_absent(kind, row)
    if inserted is not None:
        logger.warning(
            "dead_letters.quarantined",
            extra={
                "component": "worker",
                "kind": kind,
                "source_id": row["id"],
                "error_code": row["error"]["code"],
                "attempts": row["attempts"],
            },
        )
        return inserted

    refresh = {"snapshot": row["snapshot"], "error": row["error"], "attempts": row["attempts"]}
    await update_dead_letter(kind, row["id"], refresh)
    existing = await select_dead_letter(kind, row["id"])
    logger.warning(
        "dead_letters.requarantined",
        extra={
            "component": "worker",
            "kind": kind,
            "source_id": row["id"],
            "error_code": row["error"]["code"],
            "attempts": row["attempts"],
        },
    )
    return existing if existing is not None else {**row, **refresh}
