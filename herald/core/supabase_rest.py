from typing import Any

import httpx
from fastapi import HTTPException, status

from herald.core.settings import get_settings
from herald.core.timeutils import to_iso, utc_now

EVENTS_TABLE = "notification_events"
JOB_TABLES = {
    "email": "email_jobs",
    "push": "push_jobs",
    "in_app": "in_app_jobs",
}
DEAD_LETTER_TABLES = {
    "event": "notification_dead_letters",
    "email": "email_job_dead_letters",
    "push": "push_job_dead_letters",
    "in_app": "in_app_job_dead_letters",
}


def _now_iso() -> str:
    return to_iso(utc_now())


def supabase_service_role_headers() -> dict[str, str]:
    settings = get_settings()
    service_role_key = settings.SUPABASE_SERVICE_ROLE_KEY
    if not service_role_key or not service_role_key.strip():
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Notification store is not configured.",
        )
    return {
        "Authorization": f"Bearer {service_role_key}",
        "apikey": service_role_key,
        "Accept": "application/json",
    }


def _table_url(table: str) -> str:
    settings = get_settings()
    return f"{settings.SUPABASE_URL.rstrip('/')}/rest/v1/{table}"


def _job_table(channel: str) -> str:
    table = JOB_TABLES.get(channel)
    if table is None:
        raise ValueError(f"unknown job channel: {channel}")
    return table


def _dead_letter_table(kind: str) -> str:
    table = DEAD_LETTER_TABLES.get(kind)
    if table is None:
        raise ValueError(f"unknown dead-letter kind: {kind}")
    return table


def _validated_list_payload(payload: Any, error_message: str) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_message,
        )

    for item in payload:
        if not isinstance(item, dict):
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=error_message,
            )

    return payload


async def _service_role_select(
    table: str,
    params: dict[str, str],
    *,
    error_detail: str,
) -> list[dict[str, Any]]:
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                _table_url(table),
                params=params,
                headers=supabase_service_role_headers(),
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    return _validated_list_payload(response.json(), error_detail)


async def _service_role_insert_if_absent(
    table: str,
    payload: dict[str, Any],
    *,
    conflict_column: str,
    error_detail: str,
) -> dict[str, Any] | None:
    """Insert a row unless one with the same conflict column already exists.

    PostgREST answers an ignored duplicate with an empty representation, so
    ``None`` means another writer got there first.
    """
    headers = supabase_service_role_headers()
    headers["Prefer"] = "resolution=ignore-duplicates,return=representation"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                _table_url(table),
                params={"on_conflict": conflict_column},
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    rows = _validated_list_payload(response.json(), error_detail)
    return rows[0] if rows else None


async def _service_role_patch(
    table: str,
    row_id: str,
    payload: dict[str, Any],
    *,
    error_detail: str,
) -> None:
    params = {"id": f"eq.{row_id}"}
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=minimal"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.patch(_table_url(table), params=params, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc


async def _service_role_conditional_patch(
    table: str,
    filters: dict[str, str],
    payload: dict[str, Any],
    *,
    error_detail: str,
) -> dict[str, Any] | None:
    """Apply ``payload`` only to the row still matching ``filters``.

    This is the single compare-and-swap primitive of the pipeline: the
    filter and the write execute as one UPDATE statement, so at most one
    concurrent caller sees a row come back.
    """
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=representation"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.patch(_table_url(table), params=filters, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc

    rows = _validated_list_payload(response.json(), error_detail)
    return rows[0] if rows else None


async def _service_role_upsert(
    table: str,
    payload: dict[str, Any],
    *,
    conflict_column: str,
    error_detail: str,
) -> None:
    headers = supabase_service_role_headers()
    headers["Prefer"] = "resolution=merge-duplicates,return=minimal"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                _table_url(table),
                params={"on_conflict": conflict_column},
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error_detail) from exc


# Events


async def insert_event_if_absent(row: dict[str, Any]) -> dict[str, Any] | None:
    return await _service_role_insert_if_absent(
        EVENTS_TABLE,
        row,
        conflict_column="event_key",
        error_detail="Failed to record notification event.",
    )


async def select_event_by_key(event_key: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        EVENTS_TABLE,
        {"select": "*", "event_key": f"eq.{event_key}", "limit": "1"},
        error_detail="Failed to fetch notification event by key.",
    )
    return rows[0] if rows else None


async def select_event_by_id(event_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        EVENTS_TABLE,
        {"select": "*", "id": f"eq.{event_id}", "limit": "1"},
        error_detail="Failed to fetch notification event.",
    )
    return rows[0] if rows else None


async def select_pending_events(limit: int = 50) -> list[dict[str, Any]]:
    return await _service_role_select(
        EVENTS_TABLE,
        {
            "select": "*",
            "status": "eq.pending",
            "order": "created_at.asc",
            "limit": str(max(1, limit)),
        },
        error_detail="Failed to fetch pending notification events.",
    )


async def select_stale_processing_events(stale_before: str, limit: int = 50) -> list[dict[str, Any]]:
    return await _service_role_select(
        EVENTS_TABLE,
        {
            "select": "*",
            "status": "eq.processing",
            "processing->>last_attempt_at": f"lt.{stale_before}",
            "order": "created_at.asc",
            "limit": str(max(1, limit)),
        },
        error_detail="Failed to fetch stale notification events.",
    )


async def compare_and_set_event(
    event_id: str,
    *,
    expected_status: str,
    expected_attempts: int | None,
    patch: dict[str, Any],
) -> dict[str, Any] | None:
    filters = {"id": f"eq.{event_id}", "status": f"eq.{expected_status}"}
    if expected_attempts is not None:
        filters["processing->>attempts"] = f"eq.{expected_attempts}"
    return await _service_role_conditional_patch(
        EVENTS_TABLE,
        filters,
        {**patch, "updated_at": _now_iso()},
        error_detail="Failed to update notification event.",
    )


async def update_event(event_id: str, patch: dict[str, Any]) -> None:
    await _service_role_patch(
        EVENTS_TABLE,
        event_id,
        {**patch, "updated_at": _now_iso()},
        error_detail="Failed to update notification event.",
    )


# Jobs


async def insert_job_if_absent(channel: str, row: dict[str, Any]) -> dict[str, Any] | None:
    return await _service_role_insert_if_absent(
        _job_table(channel),
        row,
        conflict_column="id",
        error_detail=f"Failed to enqueue {channel} job.",
    )


async def select_queued_jobs(
    channel: str,
    limit: int = 50,
    *,
    due_before: str | None = None,
) -> list[dict[str, Any]]:
    params = {
        "select": "*",
        "status": "eq.queued",
        "order": "created_at.asc",
        "limit": str(max(1, limit)),
    }
    if due_before:
        # Jobs held back by quiet hours or backoff must not fill the batch.
        params["or"] = f'(deliver_after_at.is.null,deliver_after_at.lte."{due_before}")'
    return await _service_role_select(
        _job_table(channel),
        params,
        error_detail=f"Failed to fetch queued {channel} jobs.",
    )


async def select_stale_processing_jobs(channel: str, stale_before: str, limit: int = 50) -> list[dict[str, Any]]:
    return await _service_role_select(
        _job_table(channel),
        {
            "select": "*",
            "status": "eq.processing",
            "last_attempt_at": f"lt.{stale_before}",
            "order": "last_attempt_at.asc",
            "limit": str(max(1, limit)),
        },
        error_detail=f"Failed to fetch stale {channel} jobs.",
    )


async def select_job_by_id(channel: str, job_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        _job_table(channel),
        {"select": "*", "id": f"eq.{job_id}", "limit": "1"},
        error_detail=f"Failed to fetch {channel} job.",
    )
    return rows[0] if rows else None


async def compare_and_set_job(
    channel: str,
    job_id: str,
    *,
    expected_status: str,
    expected_attempts: int | None,
    patch: dict[str, Any],
) -> dict[str, Any] | None:
    filters = {"id": f"eq.{job_id}", "status": f"eq.{expected_status}"}
    if expected_attempts is not None:
        filters["attempts"] = f"eq.{expected_attempts}"
    return await _service_role_conditional_patch(
        _job_table(channel),
        filters,
        {**patch, "updated_at": _now_iso()},
        error_detail=f"Failed to update {channel} job.",
    )


async def update_job(channel: str, job_id: str, patch: dict[str, Any]) -> None:
    await _service_role_patch(
        _job_table(channel),
        job_id,
        {**patch, "updated_at": _now_iso()},
        error_detail=f"Failed to update {channel} job.",
    )


# Dead letters


async def insert_dead_letter_if_absent(kind: str, row: dict[str, Any]) -> dict[str, Any] | None:
    return await _service_role_insert_if_absent(
        _dead_letter_table(kind),
        row,
        conflict_column="id",
        error_detail="Failed to record dead letter.",
    )


async def select_dead_letter(kind: str, dead_letter_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        _dead_letter_table(kind),
        {"select": "*", "id": f"eq.{dead_letter_id}", "limit": "1"},
        error_detail="Failed to fetch dead letter.",
    )
    return rows[0] if rows else None


async def select_dead_letters(
    kind: str,
    limit: int = 100,
    *,
    include_suppressed: bool = True,
) -> list[dict[str, Any]]:
    params = {
        "select": "*",
        "order": "created_at.desc",
        "limit": str(max(1, limit)),
    }
    if not include_suppressed:
        params["suppressed"] = "is.false"
    return await _service_role_select(
        _dead_letter_table(kind),
        params,
        error_detail="Failed to fetch dead letters.",
    )


async def update_dead_letter(kind: str, dead_letter_id: str, patch: dict[str, Any]) -> None:
    await _service_role_patch(
        _dead_letter_table(kind),
        dead_letter_id,
        {**patch, "updated_at": _now_iso()},
        error_detail="Failed to update dead letter.",
    )


async def compare_and_set_dead_letter(
    kind: str,
    dead_letter_id: str,
    *,
    expected: dict[str, Any],
    patch: dict[str, Any],
) -> dict[str, Any] | None:
    filters = {"id": f"eq.{dead_letter_id}"}
    for column, value in expected.items():
        if isinstance(value, bool):
            filters[column] = f"is.{str(value).lower()}"
        else:
            filters[column] = f"eq.{value}"
    return await _service_role_conditional_patch(
        _dead_letter_table(kind),
        filters,
        {**patch, "updated_at": _now_iso()},
        error_detail="Failed to update dead letter.",
    )


# Collaborator lookups


async def select_user_notification_preferences(user_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "user_notification_preferences",
        {"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
        error_detail="Failed to fetch notification preferences.",
    )
    return rows[0] if rows else None


async def select_user_contact(user_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "user_contacts",
        {"select": "user_id,email,display_name", "user_id": f"eq.{user_id}", "limit": "1"},
        error_detail="Failed to fetch user contact.",
    )
    return rows[0] if rows else None


async def select_user_push_tokens(user_id: str) -> list[dict[str, Any]]:
    return await _service_role_select(
        "user_push_tokens",
        {
            "select": "token,platform,created_at",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
        },
        error_detail="Failed to fetch push tokens.",
    )


async def upsert_in_app_notification(row: dict[str, Any]) -> None:
    await _service_role_upsert(
        "user_notifications",
        row,
        conflict_column="id",
        error_detail="Failed to write in-app notification.",
    )


async def select_in_app_notification(user_id: str, event_id: str) -> dict[str, Any] | None:
    rows = await _service_role_select(
        "user_notifications",
        {
            "select": "id,user_id,event_id,read_at,clicked_at",
            "user_id": f"eq.{user_id}",
            "event_id": f"eq.{event_id}",
            "limit": "1",
        },
        error_detail="Failed to fetch in-app notification.",
    )
    return rows[0] if rows else None


async def record_audit_event(payload: dict[str, Any]) -> None:
    headers = supabase_service_role_headers()
    headers["Prefer"] = "return=minimal"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                _table_url("audit_log"),
                json={**payload, "created_at": _now_iso()},
                headers=headers,
            )
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to record audit event.",
        ) from exc


async def upsert_system_status(status_id: str, payload: dict[str, Any]) -> None:
    await _service_role_upsert(
        "system_status",
        {
            "id": status_id,
            "updated_at": _now_iso(),
            "payload": payload,
        },
        conflict_column="id",
        error_detail="Failed to upsert system status.",
    )
