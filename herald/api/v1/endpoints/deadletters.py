from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from herald.api.v1.schemas.deadletters import (
    DeadLetterActionIn,
    DeadLetterActionOut,
    DeadLetterBulkRetryIn,
    DeadLetterBulkRetryOut,
    DeadLetterKind,
    DeadLetterListOut,
    DeadLetterOut,
    DeadLetterSkippedOut,
    PipelineRunIn,
    PipelineRunOut,
)
from herald.core.logging import get_logger
from herald.core.supabase_jwt import AdminActor, require_admin
from herald.services import dead_letter_recovery
from herald.services.dead_letter_recovery import (
    DeadLetterConflictError,
    DeadLetterNotFoundError,
    SourceRecordNotFoundError,
)
from herald.worker.dispatcher import JobDispatcher
from herald.worker.event_processor import EventProcessor

router = APIRouter(prefix="/admin/notifications", tags=["admin-notifications"])
admin_dependency = Depends(require_admin)
logger = get_logger("api.deadletters")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, DeadLetterNotFoundError | SourceRecordNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, DeadLetterConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/deadletters")
async def list_dead_letters(
    kind: DeadLetterKind = Query(default="event"),
    limit: int = Query(default=100, ge=1, le=200),
    actor: AdminActor = admin_dependency,
) -> DeadLetterListOut:
    rows = await dead_letter_recovery.list_dead_letters(kind, limit)
    return DeadLetterListOut(kind=kind, items=[DeadLetterOut.model_validate(row) for row in rows])


@router.post("/deadletters")
async def act_on_dead_letter(
    payload: DeadLetterActionIn,
    actor: AdminActor = admin_dependency,
) -> DeadLetterActionOut:
    try:
        if payload.action == "retry":
            row = await dead_letter_recovery.retry(payload.kind, payload.id, actor.user_id)
        elif payload.action == "suppress":
            row = await dead_letter_recovery.suppress(payload.kind, payload.id, actor.user_id, payload.reason)
        else:
            row = await dead_letter_recovery.unsuppress(payload.kind, payload.id, actor.user_id)
    except (DeadLetterNotFoundError, SourceRecordNotFoundError, DeadLetterConflictError, ValueError) as exc:
        raise _http_error(exc) from exc

    return DeadLetterActionOut(action=payload.action, dead_letter=DeadLetterOut.model_validate(row))


@router.post("/deadletters/retry-bulk")
async def retry_dead_letters(
    payload: DeadLetterBulkRetryIn,
    actor: AdminActor = admin_dependency,
) -> DeadLetterBulkRetryOut:
    summary = await dead_letter_recovery.retry_many(payload.kind, actor.user_id, payload.limit)
    return DeadLetterBulkRetryOut(
        kind=payload.kind,
        retried=summary.retried,
        skipped=[DeadLetterSkippedOut(**item) for item in summary.skipped],
    )


@router.post("/run")
async def run_pipeline(
    payload: PipelineRunIn,
    actor: AdminActor = admin_dependency,
) -> PipelineRunOut:
    results: dict[str, dict[str, Any]] = {}
    if payload.kind in {"events", "all"}:
        sweep = await EventProcessor().run_once(limit=payload.limit)
        results["events"] = sweep.as_dict()
    for channel in ("email", "push", "in_app"):
        if payload.kind in {channel, "all"}:
            stats = await JobDispatcher(channel).run_once(limit=payload.limit)
            results[channel] = stats.as_dict()

    logger.info(
        "admin.pipeline_run",
        extra={"component": "admin", "actor_id": actor.user_id, "run_kind": payload.kind},
    )
    return PipelineRunOut(results=results)
