from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class RequestScope(BaseModel):
    # Organization and actor resolved by the fronting gateway, never from the body.
    organization_id: str
    actor_id: str | None = None


async def get_scope(
    x_organization_id: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> RequestScope:
    if not x_organization_id or not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "ORGANIZATION_REQUIRED", "message": "X-Organization-Id header is required"},
        )
    return RequestScope(organization_id=x_organization_id.strip(), actor_id=x_actor_id or None)
