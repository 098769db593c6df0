from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.domain.models import SchemaCacheEntry
from esgflow.persistence.guards import tenant_predicate


async def replace_entries(
    session: AsyncSession,
    *,
    organization_id: str,
    connector_id: str,
    columns: Iterable[dict],
    discovered_at: datetime,
) -> int:
    # A discovery run replaces everything previously cached for the connector.
    await session.execute(delete(SchemaCacheEntry).where(SchemaCacheEntry.connector_id == connector_id))
    count = 0
    for column in columns:
        session.add(
            SchemaCacheEntry(
                organization_id=organization_id,
                connector_id=connector_id,
                table_name=column["table_name"],
                column_name=column["column_name"],
                data_type=column["data_type"],
                is_primary_key=bool(column.get("is_primary_key")),
                is_foreign_key=bool(column.get("is_foreign_key")),
                fk_target_table=column.get("fk_target_table"),
                fk_target_column=column.get("fk_target_column"),
                discovered_at=discovered_at,
            )
        )
        count += 1
    await session.flush()
    return count


async def snapshot(
    session: AsyncSession,
    organization_id: str,
    connector_ids: Sequence[str] | None = None,
) -> list[SchemaCacheEntry]:
    # One SELECT so inference sees a consistent view even while syncs run.
    stmt = select(SchemaCacheEntry).where(tenant_predicate(SchemaCacheEntry, organization_id))
    if connector_ids:
        stmt = stmt.where(SchemaCacheEntry.connector_id.in_(list(connector_ids)))
    stmt = stmt.order_by(SchemaCacheEntry.connector_id, SchemaCacheEntry.table_name, SchemaCacheEntry.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
