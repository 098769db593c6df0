from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.errors import ConflictError
from esgflow.domain.models import (
    LineageEdge,
    MappingField,
    MappingJoin,
    MappingProfile,
    MappingTable,
    MetricObservation,
)
from esgflow.persistence.guards import tenant_predicate


@dataclass(frozen=True)
class ProfileDetail:
    profile: MappingProfile
    tables: list[MappingTable]
    joins: list[MappingJoin]
    fields: list[MappingField]


async def next_version(session: AsyncSession, organization_id: str) -> int:
    result = await session.execute(
        select(func.max(MappingProfile.version)).where(tenant_predicate(MappingProfile, organization_id))
    )
    return int(result.scalar() or 0) + 1


async def create_profile(
    session: AsyncSession,
    *,
    organization_id: str,
    name: str,
    description: str | None,
    signature: str,
    tables: Sequence[dict[str, Any]],
    joins: Sequence[dict[str, Any]],
    fields: Sequence[dict[str, Any]],
) -> ProfileDetail:
    # New profiles always start as drafts; activation is a separate step.
    # A concurrent writer may take the same version first; re-read it once inside a savepoint.
    for attempt in (1, 2):
        profile = MappingProfile(
            organization_id=organization_id,
            name=name,
            description=description,
            version=await next_version(session, organization_id),
            status="draft",
            signature=signature,
        )
        try:
            async with session.begin_nested():
                session.add(profile)
                await session.flush()
        except IntegrityError as exc:
            if attempt == 2:
                raise ConflictError("Mapping profile version was taken concurrently; retry the request") from exc
            continue
        break
    table_rows = [MappingTable(profile_id=profile.id, **table) for table in tables]
    join_rows = [MappingJoin(profile_id=profile.id, **join) for join in joins]
    field_rows = [MappingField(profile_id=profile.id, **field) for field in fields]
    session.add_all([*table_rows, *join_rows, *field_rows])
    await session.flush()
    return ProfileDetail(profile=profile, tables=table_rows, joins=join_rows, fields=field_rows)


async def get_profile(session: AsyncSession, organization_id: str, profile_id: str) -> MappingProfile | None:
    result = await session.execute(
        select(MappingProfile).where(
            MappingProfile.id == profile_id,
            tenant_predicate(MappingProfile, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def list_profiles(session: AsyncSession, organization_id: str) -> list[MappingProfile]:
    result = await session.execute(
        select(MappingProfile)
        .where(tenant_predicate(MappingProfile, organization_id))
        .order_by(MappingProfile.version.desc())
    )
    return list(result.scalars().all())


async def get_profile_detail(session: AsyncSession, organization_id: str, profile_id: str) -> ProfileDetail | None:
    profile = await get_profile(session, organization_id, profile_id)
    if profile is None:
        return None
    tables = await session.execute(
        select(MappingTable).where(MappingTable.profile_id == profile.id).order_by(MappingTable.id)
    )
    joins = await session.execute(
        select(MappingJoin).where(MappingJoin.profile_id == profile.id).order_by(MappingJoin.id)
    )
    fields = await session.execute(
        select(MappingField).where(MappingField.profile_id == profile.id).order_by(MappingField.id)
    )
    return ProfileDetail(
        profile=profile,
        tables=list(tables.scalars().all()),
        joins=list(joins.scalars().all()),
        fields=list(fields.scalars().all()),
    )


async def demote_active(session: AsyncSession, organization_id: str, *, keep_id: str) -> None:
    await session.execute(
        update(MappingProfile)
        .where(
            tenant_predicate(MappingProfile, organization_id),
            MappingProfile.status == "active",
            MappingProfile.id != keep_id,
        )
        .values(status="draft")
    )


async def replace_observations(
    session: AsyncSession,
    *,
    organization_id: str,
    profile_id: str,
    observations: Sequence[MetricObservation],
    edges: Sequence[LineageEdge],
) -> None:
    # Re-running a profile replaces its outputs so repeated runs are idempotent.
    await session.execute(
        delete(MetricObservation).where(
            tenant_predicate(MetricObservation, organization_id),
            MetricObservation.profile_id == profile_id,
        )
    )
    # One observation per (organization, metric, period): the latest run wins over other profiles.
    periods_by_metric: dict[str, set[str]] = {}
    for observation in observations:
        periods_by_metric.setdefault(observation.metric_code, set()).add(observation.period)
    for metric_code, periods in sorted(periods_by_metric.items()):
        await session.execute(
            delete(MetricObservation).where(
                tenant_predicate(MetricObservation, organization_id),
                MetricObservation.metric_code == metric_code,
                MetricObservation.period.in_(sorted(periods)),
            )
        )
    await session.execute(
        delete(LineageEdge).where(
            tenant_predicate(LineageEdge, organization_id),
            LineageEdge.profile_id == profile_id,
        )
    )
    session.add_all(list(observations))
    session.add_all(list(edges))
    await session.flush()


async def list_observations(
    session: AsyncSession,
    organization_id: str,
    *,
    period: str | None = None,
) -> list[MetricObservation]:
    stmt = select(MetricObservation).where(tenant_predicate(MetricObservation, organization_id))
    if period:
        stmt = stmt.where(MetricObservation.period == period)
    result = await session.execute(stmt.order_by(MetricObservation.metric_code, MetricObservation.period))
    return list(result.scalars().all())


async def count_lineage_edges(session: AsyncSession, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(LineageEdge).where(tenant_predicate(LineageEdge, organization_id))
    )
    return int(result.scalar() or 0)
