from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.domain.models import AuditLog
from esgflow.persistence.guards import tenant_predicate


# Append-only: this module intentionally exposes no update or delete helpers.


async def latest_entry(session: AsyncSession, organization_id: str) -> AuditLog | None:
    result = await session.execute(
        select(AuditLog)
        .where(tenant_predicate(AuditLog, organization_id))
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def add_entry(session: AsyncSession, entry: AuditLog) -> AuditLog:
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(
    session: AsyncSession,
    organization_id: str,
    *,
    event_type: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> list[AuditLog]:
    # Chain order: ascending timestamp, id breaks ties.
    stmt = select(AuditLog).where(tenant_predicate(AuditLog, organization_id))
    if event_type:
        stmt = stmt.where(AuditLog.event_type == event_type)
    stmt = stmt.order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc()).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
