from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.domain.models import AuditLog
from esgflow.persistence.repos import audit as audit_repo
from esgflow.services.audit_chain import verify_chain


router = APIRouter(prefix="/audit", tags=["audit"])


def entry_view(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "agent": entry.agent,
        "event_type": entry.event_type,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "status": entry.status,
        "input_hash": entry.input_hash,
        "output_hash": entry.output_hash,
        "prev_hash": entry.prev_hash,
        "metadata": entry.metadata_json or {},
        "occurred_at": entry.occurred_at.isoformat(),
    }


@router.get("")
async def list_entries(
    event_type: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Ascending chain order; fetch one extra row to compute the next offset.
    entries = await audit_repo.list_entries(
        db, scope.organization_id, event_type=event_type, offset=offset, limit=limit + 1
    )
    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return {"items": [entry_view(entry) for entry in entries], "next_offset": next_offset}


@router.get("/verify")
async def verify(
    recompute: bool = False,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await verify_chain(db, scope.organization_id, recompute=recompute)
    return result.as_dict()
