from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.services import sync as sync_service
from esgflow.services import sync_jobs


router = APIRouter(tags=["sync"])


class SyncRequest(BaseModel):
    connector_id: str


class CancelRequest(BaseModel):
    reason: str | None = None


@router.post("/sync")
async def sync_connector(
    body: SyncRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
):
    # Synchronous run; long syncs should go through /sync-jobs instead.
    outcome = await sync_service.run_sync(db, scope.organization_id, body.connector_id, scope.actor_id)
    if outcome.success and outcome.result is not None:
        return {"success": True, "sync_log_id": outcome.sync_log_id, "result": outcome.result.as_dict()}
    if outcome.retryable:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif outcome.error_code == "SYNC_FAILED":
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return JSONResponse(
        status_code=status_code,
        content={"error": outcome.error, "code": outcome.error_code, "sync_log_id": outcome.sync_log_id},
    )


@router.post("/sync-jobs", status_code=status.HTTP_202_ACCEPTED)
async def start_sync_job(
    body: SyncRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    handle = await sync_jobs.start_sync_job(db, scope.organization_id, body.connector_id, scope.actor_id)
    return {"sync_log_id": handle.sync_log_id, "job_id": handle.job_id, "mode": handle.mode}


@router.get("/sync-logs/{sync_log_id}")
async def get_sync_log(
    sync_log_id: str,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await sync_jobs.get_sync_job(db, scope.organization_id, sync_log_id)


@router.post("/sync-logs/{sync_log_id}/cancel")
async def cancel_sync_log(
    sync_log_id: str,
    body: CancelRequest | None = None,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    reason = (body.reason if body else None) or "cancelled by request"
    return await sync_jobs.cancel_sync_job(db, scope.organization_id, sync_log_id, reason=reason)
