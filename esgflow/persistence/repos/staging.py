from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.domain.models import StagingRow
from esgflow.persistence.guards import tenant_predicate


@dataclass(frozen=True)
class StagedRecord:
    payload: dict[str, Any]
    content_hash: str
    period: str


async def upsert_batch(
    session: AsyncSession,
    *,
    organization_id: str,
    connector_id: str,
    source_table: str,
    records: Sequence[StagedRecord],
    seen_at: datetime,
) -> tuple[int, int]:
    # Returns (created, updated); an identical payload only refreshes last_seen_at.
    if not records:
        return 0, 0
    hashes = {record.content_hash for record in records}
    result = await session.execute(
        select(StagingRow.content_hash).where(
            StagingRow.connector_id == connector_id,
            StagingRow.source_table == source_table,
            StagingRow.content_hash.in_(hashes),
        )
    )
    existing = set(result.scalars().all())
    if existing:
        await session.execute(
            update(StagingRow)
            .where(
                StagingRow.connector_id == connector_id,
                StagingRow.source_table == source_table,
                StagingRow.content_hash.in_(existing),
            )
            .values(last_seen_at=seen_at)
        )
    created = 0
    updated = 0
    pending: set[str] = set()
    for record in records:
        if record.content_hash in existing or record.content_hash in pending:
            updated += 1
            continue
        pending.add(record.content_hash)
        session.add(
            StagingRow(
                organization_id=organization_id,
                connector_id=connector_id,
                source_table=source_table,
                payload=record.payload,
                content_hash=record.content_hash,
                period=record.period,
                arrived_at=seen_at,
                last_seen_at=seen_at,
            )
        )
        created += 1
    await session.flush()
    return created, updated


async def list_partition(
    session: AsyncSession,
    organization_id: str,
    connector_id: str,
    source_table: str,
) -> list[StagingRow]:
    result = await session.execute(
        select(StagingRow)
        .where(
            tenant_predicate(StagingRow, organization_id),
            StagingRow.connector_id == connector_id,
            StagingRow.source_table == source_table,
        )
        .order_by(StagingRow.id)
    )
    return list(result.scalars().all())


async def count_rows(session: AsyncSession, organization_id: str, connector_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(StagingRow).where(tenant_predicate(StagingRow, organization_id))
    if connector_id:
        stmt = stmt.where(StagingRow.connector_id == connector_id)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
