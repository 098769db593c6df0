from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.config import get_settings
from esgflow.core.errors import (
    ConfigurationError,
    EsgFlowError,
    NotFoundError,
    SyncInProgressError,
    TransientError,
)
from esgflow.core.hashing import as_utc, sha256_hex, utc_now
from esgflow.domain.connector_configs import ConnectorConfigBase, parse_connector_config
from esgflow.domain.models import Connector
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.persistence.repos import schema_cache as schema_cache_repo
from esgflow.persistence.repos import staging as staging_repo
from esgflow.persistence.repos.staging import StagedRecord
from esgflow.providers.sources import get_adapter
from esgflow.providers.sources.base import (
    FetchResult,
    HttpClientFactory,
    SourceAdapter,
    SourceContext,
    TableBatch,
    default_http_client_factory,
)
from esgflow.services.audit import sanitize_metadata, scrub_secret_values
from esgflow.services.audit_chain import AuditEntryInput, append as append_audit
from esgflow.services.periods import derive_period
from esgflow.services.resilience import KeyedLock
from esgflow.services.secrets import ResolvedSecrets, SecretResolver, get_secret_resolver
from esgflow.services.telemetry import increment_counter
from esgflow.services.transfer_policy import get_transfer_policy


logger = logging.getLogger(__name__)

_connector_locks = KeyedLock()

_DISPLAY_NAMES = {
    "aws_s3": "AWS S3",
    "azure_blob": "Azure Blob Storage",
    "sharepoint": "SharePoint",
    "onedrive": "OneDrive",
    "sap": "SAP",
    "jira": "Jira",
    "slack": "Slack",
    "teams": "Microsoft Teams",
    "rss_feed": "RSS feed",
    "postgres": "Postgres",
    "sqlite": "SQLite",
}


@dataclass(frozen=True)
class SyncResult:
    processed: int
    created: int
    updated: int
    failed: int
    stats: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "stats": self.stats,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class SyncOutcome:
    success: bool
    sync_log_id: str
    result: SyncResult | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: str
    warnings: list[str] = field(default_factory=list)


def connector_fingerprint(connector_type: str, organization_id: str, config: dict[str, Any]) -> dict[str, Any]:
    # Identity of a connector for audit input hashing; secrets are redacted.
    return {
        "connector_type": connector_type,
        "organization_id": organization_id,
        "config": sanitize_metadata(config),
    }


def validate(
    connector_type: str,
    config: dict[str, Any] | None,
    *,
    secret_resolver: SecretResolver | None = None,
    organization_id: str | None = None,
    connector_id: str | None = None,
) -> ValidationResult:
    """Check a connector configuration without side effects or network calls.

    Secrets live in a per-connector namespace, so they are only checked
    when an existing connector is named.
    """
    label = _DISPLAY_NAMES.get(connector_type, connector_type)
    try:
        parsed = parse_connector_config(connector_type, config)
        if organization_id and connector_id:
            (secret_resolver or get_secret_resolver()).resolve(parsed, organization_id, connector_id)
    except ConfigurationError as exc:
        return ValidationResult(valid=False, message=str(exc))
    settings = get_settings()
    assessment = get_transfer_policy().assess(parsed.jurisdiction, settings.processing_jurisdiction)
    if assessment.is_cross_border:
        warning = (
            f"cross-border transfer from {assessment.source_jurisdiction} "
            f"to {assessment.destination_jurisdiction}"
        )
        return ValidationResult(
            valid=True,
            message=f"{label} configuration is valid (warning: {warning})",
            warnings=[warning],
        )
    return ValidationResult(valid=True, message=f"{label} configuration is valid")


def _stage_table(
    table: TableBatch,
    config: ConnectorConfigBase,
    *,
    arrived_at,
) -> tuple[list[StagedRecord], int]:
    records: list[StagedRecord] = []
    failed = 0
    for row in table.rows:
        if not isinstance(row, dict):
            failed += 1
            continue
        records.append(
            StagedRecord(
                payload=row,
                content_hash=sha256_hex(row),
                period=derive_period(
                    row,
                    arrived_at=arrived_at,
                    granularity=config.period_granularity,
                    period_field=config.period_field,
                ),
            )
        )
    return records, failed


async def _write_fetch(
    session: AsyncSession,
    connector: Connector,
    config: ConnectorConfigBase,
    fetched: FetchResult,
) -> SyncResult:
    settings = get_settings()
    now = utc_now()
    processed = created = updated = failed = 0
    table_stats: dict[str, dict[str, int]] = {}
    table_errors: list[dict[str, str]] = []
    for table in fetched.tables:
        records, bad_rows = _stage_table(table, config, arrived_at=now)
        processed += len(table.rows)
        try:
            # SAVEPOINT per table: a table is staged completely or not at all.
            async with session.begin_nested():
                table_created = table_updated = 0
                batch_size = max(1, settings.staging_batch_size)
                for offset in range(0, len(records), batch_size):
                    batch_created, batch_updated = await staging_repo.upsert_batch(
                        session,
                        organization_id=connector.organization_id,
                        connector_id=connector.id,
                        source_table=table.name,
                        records=records[offset : offset + batch_size],
                        seen_at=now,
                    )
                    table_created += batch_created
                    table_updated += batch_updated
        except SQLAlchemyError as exc:
            logger.warning(
                "staging_table_write_failed connector_id=%s table=%s",
                connector.id,
                table.name,
                exc_info=exc,
            )
            table_errors.append({"table": table.name, "error": type(exc).__name__})
            failed += len(table.rows)
            continue
        created += table_created
        updated += table_updated
        failed += bad_rows
        table_stats[table.name] = {
            "rows": len(table.rows),
            "created": table_created,
            "updated": table_updated,
            "failed": bad_rows,
        }

    schema_columns = 0
    if fetched.schema_discovered:
        columns = [
            {
                "table_name": table.name,
                "column_name": column.name,
                "data_type": column.data_type,
                "is_primary_key": column.is_primary_key,
                "is_foreign_key": column.is_foreign_key,
                "fk_target_table": column.fk_target_table,
                "fk_target_column": column.fk_target_column,
            }
            for table in fetched.tables
            for column in table.columns
        ]
        async with session.begin_nested():
            schema_columns = await schema_cache_repo.replace_entries(
                session,
                organization_id=connector.organization_id,
                connector_id=connector.id,
                columns=columns,
                discovered_at=now,
            )

    stats = dict(fetched.stats)
    stats["tables"] = table_stats
    metadata = dict(fetched.metadata)
    metadata["schema_columns"] = schema_columns
    metadata["schema_discovered"] = fetched.schema_discovered
    if table_errors:
        metadata["table_errors"] = table_errors
    return SyncResult(
        processed=processed,
        created=created,
        updated=updated,
        failed=failed,
        stats=stats,
        metadata=metadata,
    )


async def reserve_sync_log(
    session: AsyncSession,
    connector: Connector,
    *,
    sync_log_id: str | None,
    attempt: int,
) -> str:
    # Abandoned running logs are failed as stale; any other running log blocks this sync.
    settings = get_settings()
    now = utc_now()
    stale_before = now - timedelta(seconds=settings.sync_stale_after_s)
    for log in await connectors_repo.list_running_logs(session, connector.id):
        if log.id == sync_log_id:
            continue
        if as_utc(log.started_at) < stale_before:
            await connectors_repo.finish_sync_log(
                session, log.id, status="failed", completed_at=now, error_message="stale"
            )
            logger.warning("connector_sync_stale_log connector_id=%s sync_log_id=%s", connector.id, log.id)
            continue
        await session.commit()
        raise SyncInProgressError(f"Sync already running for connector {connector.id}")
    if sync_log_id is None:
        log = await connectors_repo.create_sync_log(session, connector=connector, attempt=attempt, started_at=now)
        sync_log_id = log.id
    # The running log is durable before any I/O starts.
    await session.commit()
    return sync_log_id


@dataclass(frozen=True)
class _ConnectorRef:
    # Plain identifiers that stay readable after a rollback expires ORM state.
    id: str
    organization_id: str
    connector_type: str


async def _finish_failed(
    session: AsyncSession,
    ref: _ConnectorRef,
    sync_log_id: str,
    *,
    message: str,
    actor_id: str | None,
    fingerprint: dict[str, Any],
    error_code: str,
) -> None:
    now = utc_now()
    await connectors_repo.finish_sync_log(session, sync_log_id, status="failed", completed_at=now, error_message=message)
    await connectors_repo.record_connector_outcome(session, ref.id, synced_at=now, success=False, error=message)
    await append_audit(
        session,
        AuditEntryInput(
            organization_id=ref.organization_id,
            agent="connector_sync",
            event_type="sync",
            action=f"sync:{ref.connector_type}",
            status="failed",
            actor_id=actor_id,
            input_payload=fingerprint,
            metadata={
                "connector_id": ref.id,
                "sync_log_id": sync_log_id,
                "error": message,
                "error_code": error_code,
            },
        ),
        commit=True,
    )


async def run_sync(
    session: AsyncSession,
    organization_id: str,
    connector_id: str,
    actor_id: str | None = None,
    *,
    sync_log_id: str | None = None,
    attempt: int = 1,
    http_client_factory: HttpClientFactory | None = None,
    secret_resolver: SecretResolver | None = None,
    adapter: SourceAdapter | None = None,
) -> SyncOutcome:
    """Run one sync attempt for a connector.

    Adapter failures end in a failed sync log and a failed outcome; only
    cancellation propagates, after the log is closed.
    """
    connector = await connectors_repo.get_connector(session, organization_id, connector_id)
    if connector is None:
        raise NotFoundError(f"Connector not found: {connector_id}")
    settings = get_settings()
    ref = _ConnectorRef(
        id=connector.id,
        organization_id=connector.organization_id,
        connector_type=connector.connector_type,
    )
    fingerprint = connector_fingerprint(connector.connector_type, organization_id, connector.config or {})
    async with _connector_locks.hold(ref.id):
        sync_log_id = await reserve_sync_log(session, connector, sync_log_id=sync_log_id, attempt=attempt)
        secrets = ResolvedSecrets({})
        logger.info(
            "connector_sync_started connector_id=%s connector_type=%s sync_log_id=%s attempt=%s",
            connector.id,
            connector.connector_type,
            sync_log_id,
            attempt,
        )
        try:
            config = parse_connector_config(connector.connector_type, connector.config)
            source = adapter or get_adapter(connector.connector_type)
            secrets = (secret_resolver or get_secret_resolver()).resolve(config, organization_id, connector.id)
            ctx = SourceContext(
                connector_id=connector.id,
                organization_id=organization_id,
                config=config,
                secrets=secrets,
                http_client_factory=http_client_factory or default_http_client_factory,
                settings=settings,
            )
            try:
                fetched = await asyncio.wait_for(source.fetch(ctx), timeout=settings.sync_timeout_s)
            except asyncio.TimeoutError as exc:
                raise TransientError(f"Sync timed out after {settings.sync_timeout_s}s") from exc
            result = await _write_fetch(session, connector, config, fetched)
            now = utc_now()
            await connectors_repo.finish_sync_log(
                session,
                sync_log_id,
                status="completed",
                completed_at=now,
                counts={
                    "processed": result.processed,
                    "created": result.created,
                    "updated": result.updated,
                    "failed": result.failed,
                },
                metadata=result.metadata,
            )
            await connectors_repo.record_connector_outcome(
                session, connector.id, synced_at=now, success=True, stats=result.stats
            )
            await append_audit(
                session,
                AuditEntryInput(
                    organization_id=organization_id,
                    agent="connector_sync",
                    event_type="sync",
                    action=f"sync:{connector.connector_type}",
                    status="success",
                    actor_id=actor_id,
                    input_payload=fingerprint,
                    metadata={
                        "connector_id": connector.id,
                        "sync_log_id": sync_log_id,
                        "result": {
                            "processed": result.processed,
                            "created": result.created,
                            "updated": result.updated,
                            "failed": result.failed,
                        },
                        "tables": sorted(result.stats.get("tables", {})),
                    },
                ),
                commit=True,
            )
            increment_counter("connector_sync_success_total")
            logger.info(
                "connector_sync_completed connector_id=%s processed=%s created=%s updated=%s failed=%s",
                connector.id,
                result.processed,
                result.created,
                result.updated,
                result.failed,
            )
            return SyncOutcome(success=True, sync_log_id=sync_log_id, result=result)
        except asyncio.CancelledError as exc:
            reason = str(exc) or "task cancelled"
            await session.rollback()
            await _finish_failed(
                session,
                ref,
                sync_log_id,
                message=f"cancelled ({reason})",
                actor_id=actor_id,
                fingerprint=fingerprint,
                error_code="CANCELLED",
            )
            increment_counter("connector_sync_cancelled_total")
            logger.warning("connector_sync_cancelled connector_id=%s sync_log_id=%s", ref.id, sync_log_id)
            raise
        except EsgFlowError as exc:
            message = scrub_secret_values(str(exc), secrets.all_values())
            await session.rollback()
            await _finish_failed(
                session,
                ref,
                sync_log_id,
                message=message,
                actor_id=actor_id,
                fingerprint=fingerprint,
                error_code=exc.code,
            )
            increment_counter("connector_sync_failed_total")
            logger.warning(
                "connector_sync_failed connector_id=%s sync_log_id=%s code=%s error=%s",
                ref.id,
                sync_log_id,
                exc.code,
                message,
            )
            return SyncOutcome(
                success=False,
                sync_log_id=sync_log_id,
                error=message,
                error_code=exc.code,
                retryable=isinstance(exc, TransientError),
            )
        except Exception as exc:  # noqa: BLE001 - adapter bugs still end in a terminal sync log
            message = scrub_secret_values(f"{type(exc).__name__}: {exc}", secrets.all_values())
            await session.rollback()
            await _finish_failed(
                session,
                ref,
                sync_log_id,
                message=message,
                actor_id=actor_id,
                fingerprint=fingerprint,
                error_code="SYNC_FAILED",
            )
            increment_counter("connector_sync_failed_total")
            logger.exception("connector_sync_crashed connector_id=%s sync_log_id=%s", ref.id, sync_log_id)
            return SyncOutcome(success=False, sync_log_id=sync_log_id, error=message, error_code="SYNC_FAILED")


async def open_sync_log(session: AsyncSession, organization_id: str, connector_id: str) -> str:
    # Reserve a running log for a background job so callers can poll it right away.
    connector = await connectors_repo.get_connector(session, organization_id, connector_id)
    if connector is None:
        raise NotFoundError(f"Connector not found: {connector_id}")
    async with _connector_locks.hold(connector.id):
        return await reserve_sync_log(session, connector, sync_log_id=None, attempt=1)


def reset_locks() -> None:
    _connector_locks.reset()
