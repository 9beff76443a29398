"""Idempotency keys for notification events.

A key identifies one business occurrence: the same inputs always produce the
same key, and occurrences that differ in type, entity, audience or
discriminator never share one. Producers pass a discriminator when a single
entity legitimately emits the same event type more than once (an auction
outbid at a new bid amount, an ending-soon reminder per threshold).
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Any


def stable_hash(value: Any) -> str:
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _normalized_targets(target_user_ids: Iterable[str]) -> list[str]:
    return sorted({str(user_id).strip() for user_id in target_user_ids if str(user_id).strip()})


def derive_event_key(
    event_type: str,
    entity_type: str,
    entity_id: str,
    target_user_ids: Iterable[str],
    discriminator: str | int | float | None = None,
) -> str:
    parts = [
        event_type.strip(),
        entity_type.strip(),
        str(entity_id).strip(),
        _normalized_targets(target_user_ids),
        None if discriminator is None else str(discriminator),
    ]
    return f"{event_type.strip()}:{stable_hash(parts)}"
