from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Connector(Base):
    __tablename__ = "connectors"
    __table_args__ = (
        Index("ix_connectors_org_type", "organization_id", "connector_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # Provider kind drives adapter dispatch; source_type is the fixed category it belongs to.
    connector_type: Mapped[str] = mapped_column(String)
    source_type: Mapped[str] = mapped_column(String)
    # Validated per connector_type; never contains secret values, only secret_refs names.
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    sync_cadence: Mapped[str] = mapped_column(String, default="manual")
    status: Mapped[str] = mapped_column(String, default="active")
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_stats: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ConnectorSyncLog(Base):
    __tablename__ = "connector_sync_logs"
    __table_args__ = (
        Index("ix_connector_sync_logs_connector_status", "connector_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # running -> completed | failed; never left running after the attempt ends.
    status: Mapped[str] = mapped_column(String, default="running")
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SchemaCacheEntry(Base):
    __tablename__ = "source_schema_cache"
    __table_args__ = (
        UniqueConstraint("connector_id", "table_name", "column_name", name="uq_schema_cache_column"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    table_name: Mapped[str] = mapped_column(String)
    column_name: Mapped[str] = mapped_column(String)
    data_type: Mapped[str] = mapped_column(String)
    is_primary_key: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_foreign_key: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fk_target_table: Mapped[str | None] = mapped_column(String, nullable=True)
    fk_target_column: Mapped[str | None] = mapped_column(String, nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StagingRow(Base):
    __tablename__ = "staging_rows"
    __table_args__ = (
        # Natural dedup key: identical payloads for the same table are staged once.
        UniqueConstraint("connector_id", "source_table", "content_hash", name="uq_staging_rows_content"),
        Index("ix_staging_rows_partition", "connector_id", "source_table", "period"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    source_table: Mapped[str] = mapped_column(String)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    content_hash: Mapped[str] = mapped_column(String(64))
    period: Mapped[str] = mapped_column(String, index=True)
    arrived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class MappingProfile(Base):
    __tablename__ = "mapping_profiles"
    __table_args__ = (
        UniqueConstraint("organization_id", "version", name="uq_mapping_profiles_org_version"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    # draft | active
    status: Mapped[str] = mapped_column(String, default="draft")
    # Structural fingerprint over tables/joins/fields for equivalence checks.
    signature: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MappingTable(Base):
    __tablename__ = "mapping_tables"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("mapping_profiles.id"), index=True)
    connector_id: Mapped[str] = mapped_column(String, ForeignKey("connectors.id"), index=True)
    source_table: Mapped[str] = mapped_column(String)
    table_alias: Mapped[str] = mapped_column(String)


class MappingJoin(Base):
    __tablename__ = "mapping_joins"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("mapping_profiles.id"), index=True)
    left_table: Mapped[str] = mapped_column(String)
    right_table: Mapped[str] = mapped_column(String)
    left_key: Mapped[str] = mapped_column(String)
    right_key: Mapped[str] = mapped_column(String)
    # inner | left
    join_type: Mapped[str] = mapped_column(String)
    confidence_score: Mapped[float] = mapped_column(Float)


class MappingField(Base):
    __tablename__ = "mapping_fields"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("mapping_profiles.id"), index=True)
    source_table: Mapped[str] = mapped_column(String)
    source_column: Mapped[str] = mapped_column(String)
    target_metric_code: Mapped[str] = mapped_column(String)
    unit: Mapped[str] = mapped_column(String)
    transform: Mapped[dict[str, Any]] = mapped_column(JSONType)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class MetricObservation(Base):
    __tablename__ = "metric_observations"
    __table_args__ = (
        Index("ix_metric_observations_org_metric_period", "organization_id", "metric_code", "period"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("mapping_profiles.id"), index=True)
    metric_code: Mapped[str] = mapped_column(String)
    period: Mapped[str] = mapped_column(String)
    value: Mapped[float] = mapped_column(Float)
    unit: Mapped[str] = mapped_column(String)
    source_table: Mapped[str] = mapped_column(String)
    source_column: Mapped[str] = mapped_column(String)
    row_count: Mapped[int] = mapped_column(Integer, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LineageEdge(Base):
    __tablename__ = "data_lineage_edges"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("mapping_profiles.id"), index=True)
    connector_id: Mapped[str | None] = mapped_column(String, nullable=True)
    from_reference: Mapped[str] = mapped_column(String)
    to_reference: Mapped[str] = mapped_column(String)
    relation_type: Mapped[str] = mapped_column(String, default="field_mapping")
    period: Mapped[str] = mapped_column(String)
    source_jurisdiction: Mapped[str | None] = mapped_column(String, nullable=True)
    destination_jurisdiction: Mapped[str | None] = mapped_column(String, nullable=True)
    is_cross_border: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class KpiRule(Base):
    __tablename__ = "esg_kpi_rules"
    __table_args__ = (
        Index("ix_esg_kpi_rules_org_active", "organization_id", "active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    metric_code: Mapped[str] = mapped_column(String)
    # Validated formula descriptor (field_sum | sum | ratio).
    formula: Mapped[dict[str, Any]] = mapped_column(JSONType)
    unit: Mapped[str] = mapped_column(String)
    esrs_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class KpiResult(Base):
    __tablename__ = "esg_kpi_results"
    __table_args__ = (
        UniqueConstraint("organization_id", "metric_code", "period", name="uq_esg_kpi_results_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    metric_code: Mapped[str] = mapped_column(String)
    period: Mapped[str] = mapped_column(String)
    # Null only when status is undefined (e.g. division by zero).
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str] = mapped_column(String)
    # ok | undefined
    status: Mapped[str] = mapped_column(String, default="ok")
    status_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    # valid | invalid; invalid values are reported, never clamped.
    quality_status: Mapped[str] = mapped_column(String, default="valid")
    rule_id: Mapped[str | None] = mapped_column(String, nullable=True)
    lineage: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DataQualityFinding(Base):
    __tablename__ = "data_quality_findings"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    check_type: Mapped[str] = mapped_column(String)
    # pass | warning | fail
    status: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    metric_code: Mapped[str | None] = mapped_column(String, nullable=True)
    period: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_org_occurred_at", "organization_id", "occurred_at"),
    )

    # Monotonic id breaks ties between entries sharing a timestamp.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    agent: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # output_hash of the previous entry for the organization; null for the first entry.
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
