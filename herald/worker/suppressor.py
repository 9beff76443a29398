from __future__ import annotations

from datetime import datetime
from typing import Any

from herald.core.logging import get_logger
from herald.core.supabase_rest import select_in_app_notification
from herald.core.timeutils import parse_utc_timestamp
from herald.notifications.rules import email_escalation_delay_seconds
from herald.notifications.templates import TEMPLATE_EVENT_TYPES
from herald.worker.retry import sanitize_error

logger = get_logger("worker.suppressor")


def is_escalation_job(job: dict[str, Any]) -> bool:
    """Only delayed email follow-ups of in-app notifications are suppressible."""
    if str(job.get("channel") or "") != "email":
        return False
    event_type = TEMPLATE_EVENT_TYPES.get(str(job.get("template") or ""))
    return event_type is not None and email_escalation_delay_seconds(event_type) > 0


async def should_suppress(job: dict[str, Any], now: datetime) -> bool:
    """True when the user already clicked the in-app notification for this event.

    A read without a click never suppresses. Any lookup failure answers
    False so the message is sent.
    """
    if not is_escalation_job(job):
        return False

    user_id = str(job.get("user_id") or "").strip()
    event_id = str(job.get("event_id") or "").strip()
    if not user_id or not event_id:
        return False

    try:
        notification = await select_in_app_notification(user_id, event_id)
    except Exception as exc:
        logger.warning(
            "suppressor.lookup_failed",
            extra={
                "component": "worker",
                "job_id": job.get("id"),
                "error": sanitize_error(exc, default_message="engagement lookup failed"),
            },
        )
        return False

    if not isinstance(notification, dict):
        return False
    clicked_at = parse_utc_timestamp(notification.get("clicked_at"))
    return clicked_at is not None and clicked_at <= now
