from __future__ import annotations

from typing import Any

import httpx

from herald.core.logging import get_logger
from herald.core.settings import get_settings

logger = get_logger("notifications.push")

_RETRYABLE_CLIENT_STATUSES = {408, 429}


class PushNotConfiguredError(RuntimeError):
    pass


class PushSendError(RuntimeError):
    def __init__(self, message: str, *, permanent: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code


async def send_push(
    *,
    token: str,
    title: str,
    body: str,
    url: str | None = None,
    data: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> str | None:
    """Deliver one push message through the gateway; return its message id if reported."""
    settings = get_settings()
    gateway_url = (settings.PUSH_GATEWAY_URL or "").strip()
    if not gateway_url:
        raise PushNotConfiguredError("Push gateway is not configured.")

    headers = {"Accept": "application/json"}
    gateway_token = (settings.PUSH_GATEWAY_TOKEN or "").strip()
    if gateway_token:
        headers["Authorization"] = f"Bearer {gateway_token}"

    message: dict[str, Any] = {
        "token": token,
        "notification": {"title": title, "body": body},
        "data": {**(data or {}), **({"url": url} if url else {})},
    }

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(gateway_url, json={"message": message}, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status_code = exc.response.status_code
        permanent = 400 <= status_code < 500 and status_code not in _RETRYABLE_CLIENT_STATUSES
        logger.warning(
            "notifications.push_send_failed",
            extra={
                "component": "worker",
                "request_id": request_id,
                "status_code": status_code,
                "permanent": permanent,
            },
        )
        raise PushSendError(
            f"Push gateway rejected message with status {status_code}.",
            permanent=permanent,
            status_code=status_code,
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning(
            "notifications.push_send_failed",
            extra={"component": "worker", "request_id": request_id},
        )
        raise PushSendError("Failed to reach push gateway.") from exc

    try:
        body_json = response.json()
    except ValueError:
        body_json = None
    message_id = (body_json.get("name") or body_json.get("id")) if isinstance(body_json, dict) else None

    logger.info(
        "notifications.push_sent",
        extra={"component": "worker", "request_id": request_id},
    )
    return str(message_id) if message_id else None
