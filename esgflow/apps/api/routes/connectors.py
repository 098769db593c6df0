from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.apps.api.deps import RequestScope, get_db, get_scope
from esgflow.core.errors import NotFoundError
from esgflow.domain.models import Connector
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.services import connectors as connector_service
from esgflow.services import sync as sync_service


router = APIRouter(tags=["connectors"])


class ConnectorCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    connector_type: str
    config: dict[str, Any] = Field(default_factory=dict)
    sync_cadence: str = "daily"


class ValidateRequest(BaseModel):
    connector_type: str
    config: dict[str, Any] = Field(default_factory=dict)
    # Also check the namespaced secrets of this existing connector.
    connector_id: str | None = None


def connector_view(connector: Connector) -> dict[str, Any]:
    return {
        "id": connector.id,
        "name": connector.name,
        "connector_type": connector.connector_type,
        "source_type": connector.source_type,
        "config": connector.config or {},
        "sync_cadence": connector.sync_cadence,
        "status": connector.status,
        "last_sync_at": connector.last_sync_at.isoformat() if connector.last_sync_at else None,
        "last_sync_status": connector.last_sync_status,
        "last_error": connector.last_error,
        "sync_stats": connector.sync_stats,
    }


@router.post("/connectors", status_code=status.HTTP_201_CREATED)
async def create_connector(
    body: ConnectorCreateRequest,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    connector = await connector_service.create_connector(
        db,
        scope.organization_id,
        name=body.name,
        connector_type=body.connector_type,
        config=body.config,
        sync_cadence=body.sync_cadence,
        actor_id=scope.actor_id,
    )
    return connector_view(connector)


@router.get("/connectors")
async def list_connectors(
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    connectors = await connectors_repo.list_connectors(db, scope.organization_id)
    return {"items": [connector_view(connector) for connector in connectors]}


@router.get("/connectors/{connector_id}")
async def get_connector(
    connector_id: str,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> dict:
    connector = await connectors_repo.get_connector(db, scope.organization_id, connector_id)
    if connector is None:
        raise NotFoundError(f"Connector not found: {connector_id}")
    return connector_view(connector)


@router.delete("/connectors/{connector_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connector(
    connector_id: str,
    scope: RequestScope = Depends(get_scope),
    db: AsyncSession = Depends(get_db),
) -> Response:
    # Referenced connectors are rejected with 409 by the service.
    await connector_service.delete_connector(db, scope.organization_id, connector_id, actor_id=scope.actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/validate")
async def validate_connector(
    body: ValidateRequest,
    scope: RequestScope = Depends(get_scope),
) -> dict:
    result = sync_service.validate(
        body.connector_type,
        body.config,
        organization_id=scope.organization_id,
        connector_id=body.connector_id,
    )
    return {"valid": result.valid, "message": result.message, "warnings": result.warnings}
