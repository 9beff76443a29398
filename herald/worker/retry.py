from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import datetime, timedelta

from fastapi import HTTPException

_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key|token|secret|password)\s*[:=]\s*[^\s,;]+", re.IGNORECASE),
)


def backoff_seconds(attempts: int, schedule: Sequence[int]) -> int:
    """Wait required after ``attempts`` prior attempts, clamped to the table's last entry."""
    if not schedule:
        return 0
    index = min(max(0, attempts), len(schedule) - 1)
    return int(schedule[index])


def next_attempt_at(
    last_attempt_at: datetime | None,
    attempts: int,
    schedule: Sequence[int],
) -> datetime | None:
    if last_attempt_at is None:
        return None
    return last_attempt_at + timedelta(seconds=backoff_seconds(attempts, schedule))


def in_backoff_window(
    now: datetime,
    last_attempt_at: datetime | None,
    attempts: int,
    schedule: Sequence[int],
) -> bool:
    due_at = next_attempt_at(last_attempt_at, attempts, schedule)
    return due_at is not None and now < due_at


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message

    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]
