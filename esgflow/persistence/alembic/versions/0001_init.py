"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, default: bool = False) -> sa.Column:
    if default:
        return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=nullable)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "connectors",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("connector_type", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("config", postgresql.JSONB(), nullable=False),
        sa.Column("sync_cadence", sa.String(), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _ts("last_sync_at"),
        sa.Column("last_sync_status", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sync_stats", postgresql.JSONB(), nullable=True),
        _ts("created_at", default=True),
    )
    op.create_index("ix_connectors_organization_id", "connectors", ["organization_id"])
    op.create_index("ix_connectors_org_type", "connectors", ["organization_id", "connector_type"])

    op.create_table(
        "connector_sync_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("records_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("started_at", default=True),
        _ts("completed_at"),
    )
    op.create_index("ix_connector_sync_logs_connector_id", "connector_sync_logs", ["connector_id"])
    op.create_index("ix_connector_sync_logs_organization_id", "connector_sync_logs", ["organization_id"])
    op.create_index(
        "ix_connector_sync_logs_connector_status", "connector_sync_logs", ["connector_id", "status"]
    )

    op.create_table(
        "source_schema_cache",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("column_name", sa.String(), nullable=False),
        sa.Column("data_type", sa.String(), nullable=False),
        sa.Column("is_primary_key", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_foreign_key", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fk_target_table", sa.String(), nullable=True),
        sa.Column("fk_target_column", sa.String(), nullable=True),
        _ts("discovered_at", default=True),
        sa.UniqueConstraint("connector_id", "table_name", "column_name", name="uq_schema_cache_column"),
    )
    op.create_index("ix_source_schema_cache_organization_id", "source_schema_cache", ["organization_id"])
    op.create_index("ix_source_schema_cache_connector_id", "source_schema_cache", ["connector_id"])

    op.create_table(
        "staging_rows",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("source_table", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        _ts("arrived_at", nullable=False),
        _ts("last_seen_at", nullable=False),
        sa.UniqueConstraint("connector_id", "source_table", "content_hash", name="uq_staging_rows_content"),
    )
    op.create_index("ix_staging_rows_organization_id", "staging_rows", ["organization_id"])
    op.create_index("ix_staging_rows_connector_id", "staging_rows", ["connector_id"])
    op.create_index("ix_staging_rows_period", "staging_rows", ["period"])
    op.create_index("ix_staging_rows_partition", "staging_rows", ["connector_id", "source_table", "period"])

    op.create_table(
        "mapping_profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("signature", sa.String(length=64), nullable=True),
        _ts("created_at", default=True),
        sa.UniqueConstraint("organization_id", "version", name="uq_mapping_profiles_org_version"),
    )
    op.create_index("ix_mapping_profiles_organization_id", "mapping_profiles", ["organization_id"])

    op.create_table(
        "mapping_tables",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("mapping_profiles.id"), nullable=False),
        sa.Column("connector_id", sa.String(), sa.ForeignKey("connectors.id"), nullable=False),
        sa.Column("source_table", sa.String(), nullable=False),
        sa.Column("table_alias", sa.String(), nullable=False),
    )
    op.create_index("ix_mapping_tables_profile_id", "mapping_tables", ["profile_id"])
    op.create_index("ix_mapping_tables_connector_id", "mapping_tables", ["connector_id"])

    op.create_table(
        "mapping_joins",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("mapping_profiles.id"), nullable=False),
        sa.Column("left_table", sa.String(), nullable=False),
        sa.Column("right_table", sa.String(), nullable=False),
        sa.Column("left_key", sa.String(), nullable=False),
        sa.Column("right_key", sa.String(), nullable=False),
        sa.Column("join_type", sa.String(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
    )
    op.create_index("ix_mapping_joins_profile_id", "mapping_joins", ["profile_id"])

    op.create_table(
        "mapping_fields",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("mapping_profiles.id"), nullable=False),
        sa.Column("source_table", sa.String(), nullable=False),
        sa.Column("source_column", sa.String(), nullable=False),
        sa.Column("target_metric_code", sa.String(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("transform", postgresql.JSONB(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_mapping_fields_profile_id", "mapping_fields", ["profile_id"])

    op.create_table(
        "metric_observations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("mapping_profiles.id"), nullable=False),
        sa.Column("metric_code", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("source_table", sa.String(), nullable=False),
        sa.Column("source_column", sa.String(), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("computed_at", default=True),
    )
    op.create_index("ix_metric_observations_organization_id", "metric_observations", ["organization_id"])
    op.create_index("ix_metric_observations_profile_id", "metric_observations", ["profile_id"])
    op.create_index(
        "ix_metric_observations_org_metric_period",
        "metric_observations",
        ["organization_id", "metric_code", "period"],
    )

    op.create_table(
        "data_lineage_edges",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("profile_id", sa.String(), sa.ForeignKey("mapping_profiles.id"), nullable=False),
        sa.Column("connector_id", sa.String(), nullable=True),
        sa.Column("from_reference", sa.String(), nullable=False),
        sa.Column("to_reference", sa.String(), nullable=False),
        sa.Column("relation_type", sa.String(), nullable=False, server_default="field_mapping"),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("source_jurisdiction", sa.String(), nullable=True),
        sa.Column("destination_jurisdiction", sa.String(), nullable=True),
        sa.Column("is_cross_border", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _ts("created_at", default=True),
    )
    op.create_index("ix_data_lineage_edges_organization_id", "data_lineage_edges", ["organization_id"])
    op.create_index("ix_data_lineage_edges_profile_id", "data_lineage_edges", ["profile_id"])

    op.create_table(
        "esg_kpi_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("metric_code", sa.String(), nullable=False),
        sa.Column("formula", postgresql.JSONB(), nullable=False),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("esrs_reference", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", default=True),
    )
    op.create_index("ix_esg_kpi_rules_organization_id", "esg_kpi_rules", ["organization_id"])
    op.create_index("ix_esg_kpi_rules_org_active", "esg_kpi_rules", ["organization_id", "active"])

    op.create_table(
        "esg_kpi_results",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("metric_code", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="ok"),
        sa.Column("status_reason", sa.String(), nullable=True),
        sa.Column("quality_status", sa.String(), nullable=False, server_default="valid"),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("lineage", postgresql.JSONB(), nullable=True),
        _ts("computed_at", default=True),
        sa.UniqueConstraint("organization_id", "metric_code", "period", name="uq_esg_kpi_results_key"),
    )
    op.create_index("ix_esg_kpi_results_organization_id", "esg_kpi_results", ["organization_id"])

    op.create_table(
        "data_quality_findings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("check_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metric_code", sa.String(), nullable=True),
        sa.Column("period", sa.String(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        _ts("created_at", default=True),
    )
    op.create_index("ix_data_quality_findings_organization_id", "data_quality_findings", ["organization_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("agent", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("input_hash", sa.String(length=64), nullable=True),
        sa.Column("output_hash", sa.String(length=64), nullable=True),
        sa.Column("prev_hash", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _ts("occurred_at", nullable=False),
    )
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])
    op.create_index("ix_audit_logs_event_type", "audit_logs", ["event_type"])
    op.create_index("ix_audit_logs_org_occurred_at", "audit_logs", ["organization_id", "occurred_at"])
    # Append-only at the database level as well as in the repository.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_logs_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION audit_logs_reject_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS audit_logs_reject_mutation()")
    for table in (
        "audit_logs",
        "data_quality_findings",
        "esg_kpi_results",
        "esg_kpi_rules",
        "data_lineage_edges",
        "metric_observations",
        "mapping_fields",
        "mapping_joins",
        "mapping_tables",
        "mapping_profiles",
        "staging_rows",
        "source_schema_cache",
        "connector_sync_logs",
        "connectors",
    ):
        op.drop_table(table)
