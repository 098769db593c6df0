from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
import math
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.config import get_settings
from esgflow.core.errors import ConfigurationError, NotFoundError
from esgflow.domain.descriptors import (
    ConvertUnitTransform,
    GroupByTransform,
    SumTransform,
    parse_transform,
)
from esgflow.domain.models import LineageEdge, MappingField, MappingJoin, MappingTable, MetricObservation
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.persistence.repos import staging as staging_repo
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.periods import period_sort_key
from esgflow.services.transfer_policy import get_transfer_policy


logger = logging.getLogger(__name__)


@dataclass
class CorrelatedRow:
    period: str
    values: dict[str, Any]


@dataclass
class Partition:
    table: MappingTable
    rows: list[CorrelatedRow]


@dataclass
class _Aggregate:
    value: float
    unit: str
    source_table: str
    source_column: str
    row_count: int = 0


@dataclass
class ExecutionStats:
    fields_total: int = 0
    fields_processed: int = 0
    fields_failed: int = 0
    rows_read: int = 0
    rows_used: int = 0
    rows_skipped: int = 0
    rows_excluded_by_join: int = 0
    joins_applied: int = 0
    joins_unresolved: int = 0
    tables: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "fields_total": self.fields_total,
            "fields_processed": self.fields_processed,
            "fields_failed": self.fields_failed,
            "rows_read": self.rows_read,
            "rows_used": self.rows_used,
            "rows_skipped": self.rows_skipped,
            "rows_excluded_by_join": self.rows_excluded_by_join,
            "joins_applied": self.joins_applied,
            "joins_unresolved": self.joins_unresolved,
            "tables": list(self.tables),
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    profile_id: str
    metrics_processed: int
    metric_codes: list[str]
    observations: list[dict[str, Any]]
    failures: list[dict[str, Any]]
    stats: dict[str, Any]

    @property
    def success(self) -> bool:
        return self.stats.get("fields_processed", 0) > 0


def numeric_value(raw: Any) -> float | None:
    # Returns None for anything that is not a finite number or numeric string.
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def dedupe_joins(joins: Sequence[MappingJoin]) -> list[MappingJoin]:
    # Same (left, right, left_key, right_key) proposed twice keeps the higher confidence.
    best: dict[tuple[str, str, str, str], MappingJoin] = {}
    for join in joins:
        key = (join.left_table, join.right_table, join.left_key, join.right_key)
        current = best.get(key)
        if current is None or (join.confidence_score or 0) > (current.confidence_score or 0):
            best[key] = join
    return [best[key] for key in sorted(best)]


def apply_joins(
    partitions: dict[str, Partition],
    joins: Sequence[MappingJoin],
    stats: ExecutionStats,
) -> dict[str, list[CorrelatedRow]]:
    """Correlate each left table with its right tables by payload key values.

    A row whose left key is absent is excluded; an unmatched row survives
    only a ``left`` join. Matched rows gain ``<right_alias>.<column>`` keys.
    """
    correlated = {name: list(partition.rows) for name, partition in partitions.items()}
    for join in dedupe_joins(joins):
        if join.left_table not in partitions:
            continue
        right = partitions.get(join.right_table)
        if right is None:
            stats.joins_unresolved += 1
            continue
        index: dict[str, dict[str, Any]] = {}
        for row in right.rows:
            key = row.values.get(join.right_key)
            if key is not None:
                index.setdefault(str(key), row.values)
        alias = right.table.table_alias or join.right_table
        kept: list[CorrelatedRow] = []
        for row in correlated[join.left_table]:
            key = row.values.get(join.left_key)
            if key is None:
                stats.rows_excluded_by_join += 1
                continue
            match = index.get(str(key))
            if match is None:
                if join.join_type == "inner":
                    stats.rows_excluded_by_join += 1
                    continue
                kept.append(row)
                continue
            enriched = dict(row.values)
            enriched.update({f"{alias}.{column}": value for column, value in match.items()})
            kept.append(CorrelatedRow(period=row.period, values=enriched))
        correlated[join.left_table] = kept
        stats.joins_applied += 1
    return correlated


@dataclass
class _FieldRun:
    field: MappingField
    rows: list[CorrelatedRow]
    aggregates: dict[tuple[str, str], _Aggregate]
    stats: ExecutionStats
    periods: dict[str, int] = field(default_factory=dict)

    def add(self, metric_code: str, period: str, value: float) -> None:
        aggregate = self.aggregates.get((metric_code, period))
        if aggregate is None:
            aggregate = _Aggregate(
                value=0.0,
                unit=self.field.unit,
                source_table=self.field.source_table,
                source_column=self.field.source_column,
            )
            self.aggregates[(metric_code, period)] = aggregate
        aggregate.value += value
        aggregate.row_count += 1
        self.periods[period] = self.periods.get(period, 0) + 1
        self.stats.rows_used += 1

    def values(self):
        for row in self.rows:
            raw = row.values.get(self.field.source_column)
            if raw is None:
                continue
            value = numeric_value(raw)
            if value is None:
                self.stats.rows_skipped += 1
                continue
            yield row, value


def _run_sum(run: _FieldRun, transform: SumTransform) -> None:
    for row, value in run.values():
        run.add(run.field.target_metric_code, row.period, value)


def _run_convert_unit(run: _FieldRun, transform: ConvertUnitTransform) -> None:
    for row, value in run.values():
        run.add(run.field.target_metric_code, row.period, value * transform.factor)


def _run_group_by(run: _FieldRun, transform: GroupByTransform) -> None:
    for row, value in run.values():
        bucket = row.values.get(transform.field)
        if bucket is None or str(bucket).strip() == "":
            run.stats.rows_skipped += 1
            continue
        run.add(f"{run.field.target_metric_code}.{str(bucket).strip().lower()}", row.period, value)


TRANSFORM_HANDLERS: dict[str, Callable[[_FieldRun, Any], None]] = {
    "sum": _run_sum,
    "convert_unit": _run_convert_unit,
    "group_by": _run_group_by,
}


async def _load_partitions(
    session: AsyncSession,
    organization_id: str,
    tables: Sequence[MappingTable],
    stats: ExecutionStats,
) -> dict[str, Partition]:
    partitions: dict[str, Partition] = {}
    for table in tables:
        # The first binding of a table name wins.
        if table.source_table in partitions:
            continue
        rows = await staging_repo.list_partition(session, organization_id, table.connector_id, table.source_table)
        partitions[table.source_table] = Partition(
            table=table,
            rows=[CorrelatedRow(period=row.period, values=dict(row.payload or {})) for row in rows],
        )
        stats.rows_read += len(rows)
        stats.tables.append(table.source_table)
    return partitions


async def _source_jurisdictions(
    session: AsyncSession,
    organization_id: str,
    partitions: dict[str, Partition],
) -> dict[str, str | None]:
    jurisdictions: dict[str, str | None] = {}
    for partition in partitions.values():
        connector_id = partition.table.connector_id
        if connector_id in jurisdictions:
            continue
        connector = await connectors_repo.get_connector(session, organization_id, connector_id)
        jurisdictions[connector_id] = (connector.config or {}).get("jurisdiction") if connector else None
    return jurisdictions


async def execute(
    session: AsyncSession,
    organization_id: str,
    profile_id: str,
    actor_id: str | None = None,
) -> ExecutionOutcome:
    """Compute metric observations for a mapping profile from staged rows.

    Previous observations and lineage edges of the profile are replaced, as
    are observations other profiles stored for the same metric and period.
    Per-field problems are itemized in ``failures`` and never abort the run.
    """
    detail = await mappings_repo.get_profile_detail(session, organization_id, profile_id)
    if detail is None:
        raise NotFoundError(f"Mapping profile not found: {profile_id}")
    if not detail.fields:
        raise ConfigurationError("no fields mapped")

    settings = get_settings()
    stats = ExecutionStats(fields_total=len(detail.fields))
    partitions = await _load_partitions(session, organization_id, detail.tables, stats)
    correlated = apply_joins(partitions, detail.joins, stats)
    jurisdictions = await _source_jurisdictions(session, organization_id, partitions)
    policy = get_transfer_policy()

    aggregates: dict[tuple[str, str], _Aggregate] = {}
    failures: list[dict[str, Any]] = []
    edges: list[LineageEdge] = []
    for mapped in sorted(detail.fields, key=lambda item: item.id):
        reference = f"{mapped.source_table}.{mapped.source_column}"
        partition = partitions.get(mapped.source_table)
        if partition is None:
            failures.append({"field": reference, "metric_code": mapped.target_metric_code, "reason": "no_mapping_table"})
            continue
        if not partition.rows:
            failures.append({"field": reference, "metric_code": mapped.target_metric_code, "reason": "no_staging_rows"})
            continue
        try:
            transform = parse_transform(mapped.transform)
        except ConfigurationError as exc:
            failures.append({"field": reference, "metric_code": mapped.target_metric_code, "reason": str(exc)})
            continue
        run = _FieldRun(field=mapped, rows=correlated[mapped.source_table], aggregates=aggregates, stats=stats)
        TRANSFORM_HANDLERS[transform.type](run, transform)
        stats.fields_processed += 1
        source_jurisdiction = jurisdictions.get(partition.table.connector_id)
        for period, row_count in sorted(run.periods.items(), key=lambda item: period_sort_key(item[0])):
            assessment = policy.assess(source_jurisdiction, settings.processing_jurisdiction)
            edges.append(
                LineageEdge(
                    organization_id=organization_id,
                    profile_id=profile_id,
                    connector_id=partition.table.connector_id,
                    from_reference=reference,
                    to_reference=mapped.target_metric_code,
                    relation_type="field_mapping",
                    period=period,
                    source_jurisdiction=assessment.source_jurisdiction,
                    destination_jurisdiction=assessment.destination_jurisdiction,
                    is_cross_border=assessment.is_cross_border,
                    metadata_json={
                        "transform": transform.model_dump(),
                        "row_count": row_count,
                        "transfer_reason": assessment.reason,
                    },
                )
            )
    stats.fields_failed = len(failures)

    ordered = sorted(aggregates.items(), key=lambda item: (item[0][0], period_sort_key(item[0][1])))
    observations = [
        MetricObservation(
            organization_id=organization_id,
            profile_id=profile_id,
            metric_code=metric_code,
            period=period,
            value=aggregate.value,
            unit=aggregate.unit,
            source_table=aggregate.source_table,
            source_column=aggregate.source_column,
            row_count=aggregate.row_count,
        )
        for (metric_code, period), aggregate in ordered
    ]
    await mappings_repo.replace_observations(
        session,
        organization_id=organization_id,
        profile_id=profile_id,
        observations=observations,
        edges=edges,
    )
    metric_codes = sorted({metric_code for metric_code, _ in aggregates})
    outcome = ExecutionOutcome(
        profile_id=profile_id,
        metrics_processed=len(observations),
        metric_codes=metric_codes,
        observations=[
            {
                "metric_code": item.metric_code,
                "period": item.period,
                "value": item.value,
                "unit": item.unit,
                "row_count": item.row_count,
            }
            for item in observations
        ],
        failures=failures,
        stats=stats.as_dict(),
    )
    if not failures:
        status = "success"
    elif stats.fields_processed:
        status = "partial"
    else:
        status = "failed"
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="mapping_execution",
            event_type="run_mapping",
            action="mapping.run",
            status=status,
            actor_id=actor_id,
            input_payload={"profile_id": profile_id, "signature": detail.profile.signature},
            metadata={
                "profile_id": profile_id,
                "metrics_processed": outcome.metrics_processed,
                "metric_codes": metric_codes,
                "fields_processed": stats.fields_processed,
                "fields_failed": stats.fields_failed,
                "tables": list(stats.tables),
                "lineage_edges": len(edges),
            },
        ),
        commit=True,
    )
    logger.info(
        "mapping_executed organization_id=%s profile_id=%s metrics_processed=%s fields_failed=%s rows_skipped=%s",
        organization_id,
        profile_id,
        outcome.metrics_processed,
        stats.fields_failed,
        stats.rows_skipped,
    )
    return outcome
