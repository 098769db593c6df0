from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.domain.models import DataQualityFinding, KpiResult, KpiRule
from esgflow.persistence.guards import tenant_predicate


async def create_rule(
    session: AsyncSession,
    *,
    organization_id: str,
    metric_code: str,
    formula: dict[str, Any],
    unit: str,
    esrs_reference: str | None = None,
    active: bool = True,
) -> KpiRule:
    # New rule versions supersede older active versions for the same metric.
    result = await session.execute(
        select(KpiRule).where(tenant_predicate(KpiRule, organization_id), KpiRule.metric_code == metric_code)
    )
    previous = list(result.scalars().all())
    version = max((rule.version for rule in previous), default=0) + 1
    if active:
        for rule in previous:
            rule.active = False
    rule = KpiRule(
        organization_id=organization_id,
        metric_code=metric_code,
        formula=formula,
        unit=unit,
        esrs_reference=esrs_reference,
        version=version,
        active=active,
    )
    session.add(rule)
    await session.flush()
    return rule


async def list_rules(session: AsyncSession, organization_id: str, *, active_only: bool = True) -> list[KpiRule]:
    stmt = select(KpiRule).where(tenant_predicate(KpiRule, organization_id))
    if active_only:
        stmt = stmt.where(KpiRule.active.is_(True))
    result = await session.execute(stmt.order_by(KpiRule.metric_code, KpiRule.version))
    return list(result.scalars().all())


async def upsert_result(
    session: AsyncSession,
    *,
    organization_id: str,
    metric_code: str,
    period: str,
    values: dict[str, Any],
    computed_at: datetime,
) -> KpiResult:
    # Fetch-then-write keeps the upsert portable across Postgres and SQLite.
    result = await session.execute(
        select(KpiResult).where(
            tenant_predicate(KpiResult, organization_id),
            KpiResult.metric_code == metric_code,
            KpiResult.period == period,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = KpiResult(organization_id=organization_id, metric_code=metric_code, period=period)
        session.add(row)
    for key, value in values.items():
        setattr(row, key, value)
    row.computed_at = computed_at
    await session.flush()
    return row


async def list_results(
    session: AsyncSession,
    organization_id: str,
    *,
    period: str | None = None,
    metric_code: str | None = None,
) -> list[KpiResult]:
    stmt = select(KpiResult).where(tenant_predicate(KpiResult, organization_id))
    if period:
        stmt = stmt.where(KpiResult.period == period)
    if metric_code:
        stmt = stmt.where(KpiResult.metric_code == metric_code)
    result = await session.execute(stmt.order_by(KpiResult.metric_code, KpiResult.period))
    return list(result.scalars().all())


async def add_findings(session: AsyncSession, findings: Sequence[DataQualityFinding]) -> None:
    session.add_all(list(findings))
    await session.flush()


async def count_findings(session: AsyncSession, organization_id: str, *, status: str | None = None) -> int:
    stmt = select(func.count()).select_from(DataQualityFinding).where(
        tenant_predicate(DataQualityFinding, organization_id)
    )
    if status:
        stmt = stmt.where(DataQualityFinding.status == status)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
