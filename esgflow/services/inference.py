from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.errors import ConfigurationError, NotFoundError
from esgflow.core.hashing import sha256_hex, utc_now
from esgflow.domain.models import MappingProfile, SchemaCacheEntry
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.persistence.repos import schema_cache as schema_cache_repo
from esgflow.persistence.repos.mappings import ProfileDetail
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit


logger = logging.getLogger(__name__)

FK_JOIN_CONFIDENCE = 0.95
HEURISTIC_JOIN_CONFIDENCE = 0.75

NUMERIC_TYPES = frozenset(
    {
        "numeric",
        "integer",
        "bigint",
        "double precision",
        "real",
        "float",
        "decimal",
        "int",
        "smallint",
    }
)
TEXT_TYPES = frozenset({"text", "varchar", "character varying", "char", "character", "string"})


@dataclass(frozen=True)
class TableCategory:
    category: str
    pattern: re.Pattern[str]
    confidence: float


@dataclass(frozen=True)
class MetricPattern:
    metric_code: str
    patterns: tuple[re.Pattern[str], ...]
    unit: str
    esrs: str
    # Text columns that split the metric into buckets when present on the table.
    group_by: tuple[str, ...] = ()


# Order matters: a table takes the first category it matches.
TABLE_CATEGORIES: tuple[TableCategory, ...] = (
    TableCategory("energy", re.compile(r"energy|power|electricity|kwh", re.I), 0.9),
    TableCategory("emissions", re.compile(r"emission|co2|ghg|carbon|scope", re.I), 0.95),
    TableCategory("water", re.compile(r"water|h2o|consumption", re.I), 0.85),
    TableCategory("waste", re.compile(r"waste|disposal|recycl", re.I), 0.85),
    TableCategory("social", re.compile(r"hr|employee|headcount|diversity|gender", re.I), 0.8),
    TableCategory("supply_chain", re.compile(r"supplier|vendor|supply_chain", re.I), 0.75),
)

METRIC_PATTERNS: tuple[MetricPattern, ...] = (
    MetricPattern(
        "E1-1.scope1",
        (re.compile(r"scope_?1|direct.*emission|stationary.*combustion", re.I),),
        "tCO2e",
        "ESRS E1-1: Direct GHG Emissions",
    ),
    MetricPattern(
        "E1-1.scope2",
        (re.compile(r"scope_?2|indirect.*energy|purchased.*electricity", re.I),),
        "tCO2e",
        "ESRS E1-1: Indirect Energy Emissions",
    ),
    MetricPattern(
        "E1-2.energy_total",
        (re.compile(r"energy|electricity|kwh|power.*consum", re.I),),
        "kWh",
        "ESRS E1-2: Total Energy Consumption",
    ),
    MetricPattern(
        "E1-3.renewable_energy",
        (re.compile(r"renewable|solar|wind|green.*energy", re.I),),
        "kWh",
        "ESRS E1-3: Renewable Energy",
    ),
    MetricPattern(
        "S1-1.headcount",
        (re.compile(r"employee.*count|headcount|workforce.*size", re.I),),
        "count",
        "ESRS S1-1: Employee Count",
    ),
    MetricPattern(
        "S1-1.gender_count",
        (re.compile(r"gender|male|female|diversity", re.I),),
        "count",
        "ESRS S1-1: Gender Diversity",
        group_by=("gender", "sex"),
    ),
)


@dataclass(frozen=True)
class SuggestionOutcome:
    profile: MappingProfile
    tables: list[dict[str, Any]]
    joins: list[dict[str, Any]]
    fields: list[dict[str, Any]]

    def counts(self) -> dict[str, int]:
        return {"tables": len(self.tables), "joins": len(self.joins), "fields": len(self.fields)}


def categorize_table(table_name: str) -> TableCategory | None:
    for category in TABLE_CATEGORIES:
        if category.pattern.search(table_name):
            return category
    return None


def table_alias(table_name: str) -> str:
    # Greedy: everything up to the last underscore is dropped.
    return re.sub(r"^(.*_)", "", table_name, count=1)


def _group_columns(entries: Sequence[SchemaCacheEntry]) -> dict[str, list[SchemaCacheEntry]]:
    tables: dict[str, list[SchemaCacheEntry]] = {}
    for entry in entries:
        tables.setdefault(entry.table_name, []).append(entry)
    return tables


def suggest_joins(tables: dict[str, list[SchemaCacheEntry]]) -> list[dict[str, Any]]:
    """Propose joins from declared foreign keys, then from column naming.

    Both kinds may be proposed for the same pair; review prunes them.
    """
    joins: list[dict[str, Any]] = []
    for table_name, columns in tables.items():
        for column in columns:
            if column.is_foreign_key and column.fk_target_table:
                joins.append(
                    {
                        "left_table": table_name,
                        "right_table": column.fk_target_table,
                        "left_key": column.column_name,
                        "right_key": column.fk_target_column or "id",
                        "join_type": "inner",
                        "confidence_score": FK_JOIN_CONFIDENCE,
                    }
                )
    for left_table, left_columns in tables.items():
        for right_table, right_columns in tables.items():
            if left_table == right_table:
                continue
            right_keys = [column for column in right_columns if column.is_primary_key]
            for left_column in left_columns:
                name = left_column.column_name.lower()
                if right_table.lower() not in name or "id" not in name:
                    continue
                for right_column in right_keys:
                    joins.append(
                        {
                            "left_table": left_table,
                            "right_table": right_table,
                            "left_key": left_column.column_name,
                            "right_key": right_column.column_name,
                            "join_type": "left",
                            "confidence_score": HEURISTIC_JOIN_CONFIDENCE,
                        }
                    )
    return joins


def _dimension_for(metric: MetricPattern, columns: Sequence[SchemaCacheEntry]) -> str | None:
    text_columns = {
        column.column_name.lower(): column.column_name
        for column in columns
        if (column.data_type or "").lower() in TEXT_TYPES
    }
    for dimension in metric.group_by:
        if dimension in text_columns:
            return text_columns[dimension]
    return None


def suggest_fields(
    tables: dict[str, list[SchemaCacheEntry]],
    categories: dict[str, TableCategory],
) -> list[dict[str, Any]]:
    fields: list[dict[str, Any]] = []
    for table_name, columns in tables.items():
        for column in columns:
            if (column.data_type or "").lower() not in NUMERIC_TYPES:
                continue
            column_name = column.column_name.lower()
            combined = f"{table_name.lower()}.{column_name}"
            for metric in METRIC_PATTERNS:
                if not any(pattern.search(combined) or pattern.search(column_name) for pattern in metric.patterns):
                    continue
                dimension = _dimension_for(metric, columns)
                transform = (
                    {"type": "group_by", "field": dimension}
                    if dimension
                    else {"type": "sum", "aggregation": "period"}
                )
                fields.append(
                    {
                        "source_table": table_name,
                        "source_column": column.column_name,
                        "target_metric_code": metric.metric_code,
                        "unit": metric.unit,
                        "transform": transform,
                        "confidence_score": categories[table_name].confidence,
                        "notes": f"Auto-mapped based on pattern match to {metric.esrs}",
                    }
                )
    return fields


def profile_signature(
    tables: Sequence[dict[str, Any]],
    joins: Sequence[dict[str, Any]],
    fields: Sequence[dict[str, Any]],
) -> str:
    return sha256_hex({"tables": list(tables), "joins": list(joins), "fields": list(fields)})


def build_suggestion(entries: Sequence[SchemaCacheEntry]) -> tuple[list[dict], list[dict], list[dict]]:
    # Pure part of inference: schema snapshot in, sorted tables/joins/fields out.
    categories: dict[str, TableCategory] = {}
    connectors: dict[str, str] = {}
    for entry in entries:
        if entry.table_name in categories:
            continue
        category = categorize_table(entry.table_name)
        if category is not None:
            categories[entry.table_name] = category
            connectors[entry.table_name] = entry.connector_id
    relevant = _group_columns([entry for entry in entries if entry.table_name in categories])
    tables = sorted(
        (
            {
                "connector_id": connectors[name],
                "source_table": name,
                "table_alias": table_alias(name),
            }
            for name in relevant
        ),
        key=lambda item: (item["source_table"], item["connector_id"]),
    )
    joins = sorted(
        suggest_joins(relevant),
        key=lambda item: (
            item["left_table"],
            item["right_table"],
            item["left_key"],
            item["right_key"],
            -item["confidence_score"],
        ),
    )
    fields = sorted(
        suggest_fields(relevant, categories),
        key=lambda item: (item["source_table"], item["source_column"], item["target_metric_code"]),
    )
    return tables, joins, fields


async def suggest(
    session: AsyncSession,
    organization_id: str,
    connector_ids: Sequence[str] | None = None,
    actor_id: str | None = None,
) -> SuggestionOutcome:
    """Infer a draft mapping profile from the cached source schema."""
    entries = await schema_cache_repo.snapshot(session, organization_id, connector_ids)
    if not entries:
        raise ConfigurationError("No schema cache found. Run connector discovery first.")
    tables, joins, fields = build_suggestion(entries)
    signature = profile_signature(tables, joins, fields)
    detail = await mappings_repo.create_profile(
        session,
        organization_id=organization_id,
        name=f"Auto-suggested Mapping {utc_now().date().isoformat()}",
        description="Automatically generated mapping suggestions",
        signature=signature,
        tables=tables,
        joins=joins,
        fields=fields,
    )
    profile = detail.profile
    outcome = SuggestionOutcome(profile=profile, tables=tables, joins=joins, fields=fields)
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="mapping_inference",
            event_type="mapping_suggest",
            action="mapping.suggest",
            status="success",
            actor_id=actor_id,
            input_payload={
                "connector_ids": sorted(connector_ids or []),
                "schema": sorted(
                    [entry.connector_id, entry.table_name, entry.column_name, entry.data_type] for entry in entries
                ),
            },
            metadata={
                "profile_id": profile.id,
                "version": profile.version,
                "signature": signature,
                **outcome.counts(),
            },
        ),
        commit=True,
    )
    logger.info(
        "mapping_suggested organization_id=%s profile_id=%s version=%s tables=%s joins=%s fields=%s",
        organization_id,
        profile.id,
        profile.version,
        len(tables),
        len(joins),
        len(fields),
    )
    return outcome


async def activate(
    session: AsyncSession,
    organization_id: str,
    profile_id: str,
    actor_id: str | None = None,
) -> MappingProfile:
    profile = await mappings_repo.get_profile(session, organization_id, profile_id)
    if profile is None:
        raise NotFoundError(f"Mapping profile not found: {profile_id}")
    # One active profile per organization; the previous one returns to draft.
    await mappings_repo.demote_active(session, organization_id, keep_id=profile.id)
    profile.status = "active"
    await session.flush()
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="mapping_inference",
            event_type="mapping_activate",
            action="mapping.activate",
            status="success",
            actor_id=actor_id,
            input_payload={"profile_id": profile.id, "signature": profile.signature},
            metadata={"profile_id": profile.id, "version": profile.version},
        ),
        commit=True,
    )
    logger.info("mapping_activated organization_id=%s profile_id=%s", organization_id, profile.id)
    return profile


async def load_detail(session: AsyncSession, organization_id: str, profile_id: str) -> ProfileDetail:
    detail = await mappings_repo.get_profile_detail(session, organization_id, profile_id)
    if detail is None:
        raise NotFoundError(f"Mapping profile not found: {profile_id}")
    return detail
