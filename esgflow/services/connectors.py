from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.errors import ConfigurationError, ConflictError, NotFoundError
from esgflow.domain.connector_configs import SYNC_CADENCES, parse_connector_config, source_type_for
from esgflow.domain.models import Connector
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.sync import connector_fingerprint


logger = logging.getLogger(__name__)


async def create_connector(
    session: AsyncSession,
    organization_id: str,
    *,
    name: str,
    connector_type: str,
    config: dict[str, Any] | None,
    sync_cadence: str = "daily",
    actor_id: str | None = None,
) -> Connector:
    # Config is validated up front; secrets are only checked when a sync runs.
    if sync_cadence not in SYNC_CADENCES:
        raise ConfigurationError(f"Invalid sync cadence: {sync_cadence}")
    parsed = parse_connector_config(connector_type, config)
    stored = parsed.model_dump(mode="json", exclude={"connector_type"}, exclude_defaults=True)
    connector = await connectors_repo.create_connector(
        session,
        organization_id=organization_id,
        name=name,
        connector_type=connector_type,
        source_type=source_type_for(connector_type),
        config=stored,
        sync_cadence=sync_cadence,
    )
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="connector_admin",
            event_type="connector",
            action="connector.create",
            status="success",
            actor_id=actor_id,
            input_payload=connector_fingerprint(connector_type, organization_id, stored),
            metadata={"connector_id": connector.id, "name": name},
        ),
        commit=True,
    )
    logger.info(
        "connector_created organization_id=%s connector_id=%s connector_type=%s",
        organization_id,
        connector.id,
        connector_type,
    )
    return connector


async def delete_connector(
    session: AsyncSession,
    organization_id: str,
    connector_id: str,
    *,
    actor_id: str | None = None,
) -> None:
    connector = await connectors_repo.get_connector(session, organization_id, connector_id)
    if connector is None:
        raise NotFoundError(f"Connector not found: {connector_id}")
    # Mapping profiles keep their lineage; a referenced connector stays.
    if await connectors_repo.is_referenced(session, connector_id):
        raise ConflictError(f"Connector {connector_id} is referenced by a mapping profile")
    connector_type = connector.connector_type
    await connectors_repo.delete_connector(session, connector)
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="connector_admin",
            event_type="connector",
            action="connector.delete",
            status="success",
            actor_id=actor_id,
            metadata={"connector_id": connector_id, "connector_type": connector_type},
        ),
        commit=True,
    )
    logger.info("connector_deleted organization_id=%s connector_id=%s", organization_id, connector_id)
