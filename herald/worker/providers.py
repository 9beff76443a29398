from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi.concurrency import run_in_threadpool

from herald.core.supabase_rest import upsert_in_app_notification
from herald.core.timeutils import to_iso, utc_now
from herald.notifications.emailer import send_email
from herald.notifications.push import send_push
from herald.notifications.templates import (
    TEMPLATE_EVENT_TYPES,
    render_email,
    render_in_app,
    render_push,
    validate_template_payload,
)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PUSH_TOKEN_LENGTH = 21


class DeliveryValidationError(ValueError):
    error_code = "invalid_destination"


@dataclass(frozen=True)
class DeliveryResult:
    provider_message_id: str | None = None


class ChannelProvider(Protocol):
    channel: str

    def validate(self, job: dict[str, Any]) -> None: ...

    async def deliver(self, job: dict[str, Any], *, request_id: str | None = None) -> DeliveryResult: ...


def _destination(job: dict[str, Any]) -> str:
    value = job.get("destination")
    return value.strip() if isinstance(value, str) else ""


def _template_payload(job: dict[str, Any]) -> dict[str, Any]:
    template = str(job.get("template") or "")
    return validate_template_payload(template, job.get("template_payload"))


class EmailChannel:
    channel = "email"

    def validate(self, job: dict[str, Any]) -> None:
        if not _EMAIL_PATTERN.match(_destination(job)):
            raise DeliveryValidationError("Missing or invalid email destination.")
        _template_payload(job)

    async def deliver(self, job: dict[str, Any], *, request_id: str | None = None) -> DeliveryResult:
        payload = _template_payload(job)
        message = render_email(str(job.get("template") or ""), payload)
        message_id = await run_in_threadpool(
            send_email,
            to=_destination(job).lower(),
            subject=message["subject"],
            html=message["html"],
            text=message["text"],
            unsubscribe_url=payload.get("unsubscribe_url"),
            request_id=request_id,
        )
        return DeliveryResult(provider_message_id=message_id)


class PushChannel:
    channel = "push"

    def validate(self, job: dict[str, Any]) -> None:
        if len(_destination(job)) < MIN_PUSH_TOKEN_LENGTH:
            raise DeliveryValidationError("Missing or invalid push token.")
        _template_payload(job)

    async def deliver(self, job: dict[str, Any], *, request_id: str | None = None) -> DeliveryResult:
        message = render_push(str(job.get("template") or ""), _template_payload(job))
        message_id = await send_push(
            token=_destination(job),
            title=message["title"],
            body=message["body"],
            url=message["url"],
            data={"event_id": str(job.get("event_id") or ""), "job_id": str(job.get("id") or "")},
            request_id=request_id,
        )
        return DeliveryResult(provider_message_id=message_id)


class InAppChannel:
    channel = "in_app"

    def validate(self, job: dict[str, Any]) -> None:
        destination = _destination(job)
        if not destination or destination != str(job.get("user_id") or "").strip():
            raise DeliveryValidationError("In-app destination must be the recipient user id.")
        _template_payload(job)

    async def deliver(self, job: dict[str, Any], *, request_id: str | None = None) -> DeliveryResult:
        template = str(job.get("template") or "")
        content = render_in_app(template, _template_payload(job))
        notification_id = str(job.get("id") or "")
        # read_at and clicked_at are left out so a redelivery keeps engagement state.
        await upsert_in_app_notification(
            {
                "id": notification_id,
                "user_id": _destination(job),
                "event_id": job.get("event_id"),
                "event_type": TEMPLATE_EVENT_TYPES.get(template),
                "title": content["title"],
                "body": content["body"],
                "url": content["url"],
                "created_at": to_iso(utc_now()),
            }
        )
        return DeliveryResult(provider_message_id=notification_id)


def default_provider(channel: str) -> ChannelProvider:
    providers: dict[str, type] = {"email": EmailChannel, "push": PushChannel, "in_app": InAppChannel}
    provider_cls = providers.get(channel)
    if provider_cls is None:
        raise ValueError(f"unknown job channel: {channel}")
    return provider_cls()
