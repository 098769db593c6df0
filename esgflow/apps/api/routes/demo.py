from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.services.demo_seed import seed_demo


router = APIRouter(tags=["demo"])


@router.post("/demo-seed", status_code=status.HTTP_201_CREATED)
async def demo_seed(
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await seed_demo(db, scope.organization_id, actor_id=scope.actor_id)
    return {"success": True, **result.as_dict()}
