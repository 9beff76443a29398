from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DeadLetterKind = Literal["event", "email", "push", "in_app"]
DeadLetterAction = Literal["retry", "suppress", "unsuppress"]
RunKind = Literal["events", "email", "push", "in_app", "all"]


class DeadLetterError(BaseModel):
    code: str | None = None
    message: str


class DeadLetterOut(BaseModel):
    id: str
    kind: DeadLetterKind
    snapshot: dict[str, Any]
    error: DeadLetterError
    attempts: int = 0
    suppressed: bool = False
    suppressed_at: datetime | None = None
    suppressed_by: str | None = None
    suppressed_reason: str | None = None
    manual_retry_count: int = 0
    last_manual_retry_at: datetime | None = None
    last_manual_retry_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeadLetterListOut(BaseModel):
    ok: bool = True
    kind: DeadLetterKind
    items: list[DeadLetterOut]


class DeadLetterActionIn(BaseModel):
    kind: DeadLetterKind
    id: str = Field(min_length=1)
    action: DeadLetterAction
    reason: str | None = Field(default=None, max_length=500)


class DeadLetterActionOut(BaseModel):
    ok: bool = True
    action: DeadLetterAction
    dead_letter: DeadLetterOut


class DeadLetterBulkRetryIn(BaseModel):
    kind: DeadLetterKind
    limit: int = Field(default=50, ge=1, le=200)


class DeadLetterSkippedOut(BaseModel):
    id: str
    reason: str


class DeadLetterBulkRetryOut(BaseModel):
    ok: bool = True
    kind: DeadLetterKind
    retried: list[str]
    skipped: list[DeadLetterSkippedOut]


class PipelineRunIn(BaseModel):
    kind: RunKind = "all"
    limit: int | None = Field(default=None, ge=1, le=500)


class PipelineRunOut(BaseModel):
    ok: bool = True
    results: dict[str, dict[str, Any]]
