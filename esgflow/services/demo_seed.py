from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
import random
from typing import Any
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.hashing import sha256_hex, utc_now
from esgflow.domain.connector_configs import parse_connector_config, source_type_for
from esgflow.domain.descriptors import parse_formula
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.persistence.repos import kpis as kpis_repo
from esgflow.persistence.repos import mappings as mappings_repo
from esgflow.persistence.repos import schema_cache as schema_cache_repo
from esgflow.persistence.repos import staging as staging_repo
from esgflow.persistence.repos.staging import StagedRecord
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.inference import profile_signature
from esgflow.services.periods import derive_period, format_period


logger = logging.getLogger(__name__)

DEMO_PERIOD_COUNT = 12

DEMO_CONNECTORS: tuple[dict[str, Any], ...] = (
    {
        "key": "energy",
        "name": "Energy Monitoring DB",
        "connector_type": "postgres",
        "config": {"dsn": "postgresql+asyncpg://demo.internal/energy_data", "jurisdiction": "DE"},
        "synced_days_ago": 1,
    },
    {
        "key": "emissions",
        "name": "Emissions Tracking DB",
        "connector_type": "postgres",
        "config": {"dsn": "postgresql+asyncpg://demo.internal/emissions", "jurisdiction": "DE"},
        "synced_days_ago": 2,
    },
    {
        "key": "hr",
        "name": "HR System",
        "connector_type": "postgres",
        "config": {"dsn": "postgresql+asyncpg://demo.internal/hr", "jurisdiction": "IE"},
        "synced_days_ago": 3,
    },
)

# (connector key, table, column, type, pk, fk target table, fk target column)
DEMO_SCHEMA: tuple[tuple[str, str, str, str, bool, str | None, str | None], ...] = (
    ("energy", "energy_usage", "id", "uuid", True, None, None),
    ("energy", "energy_usage", "facility_id", "uuid", False, "facilities", "id"),
    ("energy", "energy_usage", "kwh_consumed", "numeric", False, None, None),
    ("energy", "energy_usage", "recorded_at", "timestamptz", False, None, None),
    ("energy", "facilities", "id", "uuid", True, None, None),
    ("energy", "facilities", "name", "text", False, None, None),
    ("energy", "facilities", "country", "text", False, None, None),
    ("emissions", "emissions_scope1", "id", "uuid", True, None, None),
    ("emissions", "emissions_scope1", "facility_id", "uuid", False, "facilities", "id"),
    ("emissions", "emissions_scope1", "co2_tonnes", "numeric", False, None, None),
    ("emissions", "emissions_scope1", "period", "date", False, None, None),
    ("emissions", "emissions_scope2", "id", "uuid", True, None, None),
    ("emissions", "emissions_scope2", "facility_id", "uuid", False, "facilities", "id"),
    ("emissions", "emissions_scope2", "co2_tonnes", "numeric", False, None, None),
    ("emissions", "emissions_scope2", "period", "date", False, None, None),
    ("hr", "hr_headcount", "id", "uuid", True, None, None),
    ("hr", "hr_headcount", "employee_count", "integer", False, None, None),
    ("hr", "hr_headcount", "period", "date", False, None, None),
    ("hr", "hr_diversity", "id", "uuid", True, None, None),
    ("hr", "hr_diversity", "gender", "text", False, None, None),
    ("hr", "hr_diversity", "count", "integer", False, None, None),
    ("hr", "hr_diversity", "period", "date", False, None, None),
)

DEMO_TABLES: tuple[tuple[str, str, str], ...] = (
    ("energy", "energy_usage", "energy"),
    ("emissions", "emissions_scope1", "scope1"),
    ("emissions", "emissions_scope2", "scope2"),
    ("hr", "hr_diversity", "diversity"),
)

DEMO_FIELDS: tuple[dict[str, Any], ...] = (
    {
        "source_table": "energy_usage",
        "source_column": "kwh_consumed",
        "target_metric_code": "E1-2.energy_total",
        "unit": "kWh",
        "transform": {"type": "sum", "aggregation": "period"},
    },
    {
        "source_table": "emissions_scope1",
        "source_column": "co2_tonnes",
        "target_metric_code": "E1-1.scope1",
        "unit": "tCO2e",
        "transform": {"type": "sum", "aggregation": "period"},
    },
    {
        "source_table": "emissions_scope2",
        "source_column": "co2_tonnes",
        "target_metric_code": "E1-1.scope2",
        "unit": "tCO2e",
        "transform": {"type": "sum", "aggregation": "period"},
    },
    {
        "source_table": "hr_diversity",
        "source_column": "count",
        "target_metric_code": "S1-1.gender_count",
        "unit": "count",
        "transform": {"type": "group_by", "field": "gender"},
    },
)

DEMO_RULES: tuple[dict[str, Any], ...] = (
    {
        "metric_code": "E1-1.scope1",
        "formula": {"type": "field_sum", "field": "E1-1.scope1"},
        "unit": "tCO2e",
        "esrs_reference": "ESRS E1-1: Direct GHG Emissions (Scope 1)",
    },
    {
        "metric_code": "E1-1.scope2",
        "formula": {"type": "field_sum", "field": "E1-1.scope2"},
        "unit": "tCO2e",
        "esrs_reference": "ESRS E1-1: Indirect GHG Emissions from Energy (Scope 2)",
    },
    {
        "metric_code": "E1-1.total",
        "formula": {"type": "sum", "fields": ["E1-1.scope1", "E1-1.scope2"]},
        "unit": "tCO2e",
        "esrs_reference": "ESRS E1-1: Total GHG Emissions",
    },
    {
        "metric_code": "E1-2.energy_total",
        "formula": {"type": "field_sum", "field": "E1-2.energy_total"},
        "unit": "kWh",
        "esrs_reference": "ESRS E1-2: Total Energy Consumption",
    },
    {
        "metric_code": "S1-1.gender_ratio",
        "formula": {"type": "ratio", "numerator": "S1-1.gender_count.female", "denominator": "S1-1.gender_count.male"},
        "unit": "ratio",
        "esrs_reference": "ESRS S1-1: Gender Diversity Ratio",
    },
)


@dataclass(frozen=True)
class DemoSeedResult:
    connector_ids: dict[str, str]
    staging_rows: int
    profile_id: str
    kpi_rules: int
    periods: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "connectors": len(self.connector_ids),
            "connector_ids": dict(self.connector_ids),
            "staging_rows": self.staging_rows,
            "mapping_profile": self.profile_id,
            "kpi_rules": self.kpi_rules,
            "periods": list(self.periods),
        }


def demo_periods(anchor: date, count: int = DEMO_PERIOD_COUNT) -> list[str]:
    # Oldest first, ending at the anchor month.
    year, month = anchor.year, anchor.month
    periods: list[str] = []
    for _ in range(count):
        periods.append(format_period(date(year, month, 1), "month"))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(periods))


def demo_rows(periods: list[str], *, seed: int) -> dict[str, list[dict[str, Any]]]:
    """Synthetic staging payloads per table, reproducible for a given seed."""
    rng = random.Random(seed)

    def new_id() -> str:
        return str(uuid.UUID(int=rng.getrandbits(128)))

    rows: dict[str, list[dict[str, Any]]] = {
        "energy_usage": [],
        "emissions_scope1": [],
        "emissions_scope2": [],
        "hr_headcount": [],
        "hr_diversity": [],
    }
    for period in periods:
        for facility in range(1, 6):
            rows["energy_usage"].append(
                {
                    "id": new_id(),
                    "facility_id": f"facility-{facility}",
                    "kwh_consumed": round(50000 + rng.random() * 20000, 2),
                    "recorded_at": f"{period}-15T12:00:00Z",
                }
            )
        for facility in range(1, 6):
            rows["emissions_scope1"].append(
                {
                    "id": new_id(),
                    "facility_id": f"facility-{facility}",
                    "co2_tonnes": round(10 + rng.random() * 5, 3),
                    "period": f"{period}-01",
                }
            )
        for facility in range(1, 6):
            rows["emissions_scope2"].append(
                {
                    "id": new_id(),
                    "facility_id": f"facility-{facility}",
                    "co2_tonnes": round(20 + rng.random() * 10, 3),
                    "period": f"{period}-01",
                }
            )
        rows["hr_headcount"].append(
            {"id": new_id(), "employee_count": 1000 + rng.randrange(200), "period": f"{period}-01"}
        )
        rows["hr_diversity"].append(
            {"id": new_id(), "gender": "male", "count": 600 + rng.randrange(100), "period": f"{period}-01"}
        )
        rows["hr_diversity"].append(
            {"id": new_id(), "gender": "female", "count": 400 + rng.randrange(100), "period": f"{period}-01"}
        )
    return rows


_TABLE_CONNECTOR = {
    "energy_usage": "energy",
    "emissions_scope1": "emissions",
    "emissions_scope2": "emissions",
    "hr_headcount": "hr",
    "hr_diversity": "hr",
}


async def seed_demo(
    session: AsyncSession,
    organization_id: str,
    *,
    actor_id: str | None = None,
    anchor: date | None = None,
    seed: int = 42,
) -> DemoSeedResult:
    """Create three connectors, their schema, twelve months of staged rows,
    an active mapping profile and the standard KPI rules."""
    now: datetime = utc_now()
    periods = demo_periods(anchor or now.date())

    connector_ids: dict[str, str] = {}
    for definition in DEMO_CONNECTORS:
        config = parse_connector_config(definition["connector_type"], definition["config"])
        connector = await connectors_repo.create_connector(
            session,
            organization_id=organization_id,
            name=definition["name"],
            connector_type=definition["connector_type"],
            source_type=source_type_for(definition["connector_type"]),
            config=config.model_dump(mode="json", exclude={"connector_type"}, exclude_defaults=True),
            sync_cadence="monthly",
        )
        connector.last_sync_at = now - timedelta(days=definition["synced_days_ago"])
        connector.last_sync_status = "success"
        connector_ids[definition["key"]] = connector.id

    for key, connector_id in connector_ids.items():
        await schema_cache_repo.replace_entries(
            session,
            organization_id=organization_id,
            connector_id=connector_id,
            columns=[
                {
                    "table_name": table,
                    "column_name": column,
                    "data_type": data_type,
                    "is_primary_key": is_pk,
                    "is_foreign_key": fk_table is not None,
                    "fk_target_table": fk_table,
                    "fk_target_column": fk_column,
                }
                for owner, table, column, data_type, is_pk, fk_table, fk_column in DEMO_SCHEMA
                if owner == key
            ],
            discovered_at=now,
        )

    staged = 0
    for table, payloads in demo_rows(periods, seed=seed).items():
        records = [
            StagedRecord(payload=payload, content_hash=sha256_hex(payload), period=derive_period(payload, arrived_at=now))
            for payload in payloads
        ]
        created, _ = await staging_repo.upsert_batch(
            session,
            organization_id=organization_id,
            connector_id=connector_ids[_TABLE_CONNECTOR[table]],
            source_table=table,
            records=records,
            seen_at=now,
        )
        staged += created

    tables = [
        {"connector_id": connector_ids[key], "source_table": table, "table_alias": alias}
        for key, table, alias in DEMO_TABLES
    ]
    fields = [dict(item, confidence_score=1.0, notes="Pre-configured mapping for demo data") for item in DEMO_FIELDS]
    detail = await mappings_repo.create_profile(
        session,
        organization_id=organization_id,
        name="Standard ESG Mapping",
        description="Pre-configured mapping for demo data",
        signature=profile_signature(tables, [], fields),
        tables=tables,
        joins=[],
        fields=fields,
    )
    await mappings_repo.demote_active(session, organization_id, keep_id=detail.profile.id)
    detail.profile.status = "active"

    for rule in DEMO_RULES:
        await kpis_repo.create_rule(
            session,
            organization_id=organization_id,
            metric_code=rule["metric_code"],
            formula=parse_formula(rule["formula"]).model_dump(),
            unit=rule["unit"],
            esrs_reference=rule["esrs_reference"],
        )

    result = DemoSeedResult(
        connector_ids=connector_ids,
        staging_rows=staged,
        profile_id=detail.profile.id,
        kpi_rules=len(DEMO_RULES),
        periods=periods,
    )
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=organization_id,
            agent="demo_seed",
            event_type="demo_seed",
            action="demo.seed",
            status="success",
            actor_id=actor_id,
            input_payload={"seed": seed, "periods": periods},
            metadata=result.as_dict(),
        ),
        commit=True,
    )
    logger.info(
        "demo_seeded organization_id=%s connectors=%s staging_rows=%s profile_id=%s",
        organization_id,
        len(connector_ids),
        staged,
        detail.profile.id,
    )
    return result
