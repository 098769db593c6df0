from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.domain.models import Connector, ConnectorSyncLog, MappingTable, SchemaCacheEntry, StagingRow
from esgflow.persistence.guards import tenant_predicate


async def create_connector(
    session: AsyncSession,
    *,
    organization_id: str,
    name: str,
    connector_type: str,
    source_type: str,
    config: dict[str, Any],
    sync_cadence: str,
) -> Connector:
    connector = Connector(
        organization_id=organization_id,
        name=name,
        connector_type=connector_type,
        source_type=source_type,
        config=config,
        sync_cadence=sync_cadence,
        status="active",
    )
    session.add(connector)
    await session.flush()
    return connector


async def get_connector(session: AsyncSession, organization_id: str, connector_id: str) -> Connector | None:
    # Return None on organization mismatch to keep 404 semantics.
    result = await session.execute(
        select(Connector).where(Connector.id == connector_id, tenant_predicate(Connector, organization_id))
    )
    return result.scalar_one_or_none()


async def list_connectors(session: AsyncSession, organization_id: str) -> list[Connector]:
    result = await session.execute(
        select(Connector)
        .where(tenant_predicate(Connector, organization_id))
        .order_by(Connector.created_at, Connector.id)
    )
    return list(result.scalars().all())


async def list_all_connectors(session: AsyncSession) -> list[Connector]:
    # Scheduler-only view across organizations.
    result = await session.execute(select(Connector).order_by(Connector.created_at, Connector.id))
    return list(result.scalars().all())


async def is_referenced(session: AsyncSession, connector_id: str) -> bool:
    result = await session.execute(
        select(func.count()).select_from(MappingTable).where(MappingTable.connector_id == connector_id)
    )
    return int(result.scalar() or 0) > 0


async def delete_connector(session: AsyncSession, connector: Connector) -> None:
    for model in (ConnectorSyncLog, SchemaCacheEntry, StagingRow):
        await session.execute(delete(model).where(model.connector_id == connector.id))
    await session.delete(connector)


async def create_sync_log(
    session: AsyncSession,
    *,
    connector: Connector,
    attempt: int = 1,
    started_at: datetime,
) -> ConnectorSyncLog:
    log = ConnectorSyncLog(
        connector_id=connector.id,
        organization_id=connector.organization_id,
        status="running",
        attempt=attempt,
        started_at=started_at,
    )
    session.add(log)
    await session.flush()
    return log


async def get_sync_log(session: AsyncSession, organization_id: str, sync_log_id: str) -> ConnectorSyncLog | None:
    result = await session.execute(
        select(ConnectorSyncLog).where(
            ConnectorSyncLog.id == sync_log_id,
            tenant_predicate(ConnectorSyncLog, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def list_running_logs(session: AsyncSession, connector_id: str) -> list[ConnectorSyncLog]:
    result = await session.execute(
        select(ConnectorSyncLog)
        .where(ConnectorSyncLog.connector_id == connector_id, ConnectorSyncLog.status == "running")
        .order_by(ConnectorSyncLog.started_at)
    )
    return list(result.scalars().all())


async def finish_sync_log(
    session: AsyncSession,
    sync_log_id: str,
    *,
    status: str,
    completed_at: datetime,
    counts: dict[str, int] | None = None,
    metadata: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> None:
    # Only running logs transition; a terminal state is never overwritten.
    values: dict[str, Any] = {
        "status": status,
        "completed_at": completed_at,
        "error_message": error_message,
    }
    if counts:
        values.update(
            records_processed=counts.get("processed", 0),
            records_created=counts.get("created", 0),
            records_updated=counts.get("updated", 0),
            records_failed=counts.get("failed", 0),
        )
    if metadata is not None:
        values["metadata_json"] = metadata
    await session.execute(
        update(ConnectorSyncLog)
        .where(ConnectorSyncLog.id == sync_log_id, ConnectorSyncLog.status == "running")
        .values(**values)
    )


async def record_connector_outcome(
    session: AsyncSession,
    connector_id: str,
    *,
    synced_at: datetime,
    success: bool,
    stats: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    values: dict[str, Any] = {"last_sync_at": synced_at}
    if success:
        values.update(last_sync_status="success", last_error=None, sync_stats=stats, status="active")
    else:
        values.update(last_sync_status="error", last_error=error, status="error")
    await session.execute(update(Connector).where(Connector.id == connector_id).values(**values))
