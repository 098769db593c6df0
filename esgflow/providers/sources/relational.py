from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.exc import DBAPIError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from esgflow.core.errors import ConfigurationError, TransientError
from esgflow.domain.connector_configs import PostgresConfig, SqliteConfig
from esgflow.providers.sources.base import ColumnSchema, FetchResult, SourceContext, TableBatch, json_safe
from esgflow.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_AUTH_ERROR_NAMES = {"InvalidPasswordError", "InvalidAuthorizationSpecificationError"}


def normalize_type(raw: Any) -> str:
    # NUMERIC(12, 2) -> numeric; keeps inference matching on the base type name.
    return str(raw).split("(", 1)[0].strip().lower() or "text"


def _reflect(sync_conn: Connection, schema: str | None, only: list[str] | None) -> list[tuple[str, list[ColumnSchema]]]:
    inspector = inspect(sync_conn)
    names = inspector.get_table_names(schema=schema)
    if only:
        missing = sorted(set(only) - set(names))
        if missing:
            raise ConfigurationError(f"Tables not found in source: {', '.join(missing)}")
        names = [name for name in names if name in set(only)]
    reflected: list[tuple[str, list[ColumnSchema]]] = []
    for name in sorted(names):
        primary = set(inspector.get_pk_constraint(name, schema=schema).get("constrained_columns") or [])
        foreign: dict[str, tuple[str, str]] = {}
        for fk in inspector.get_foreign_keys(name, schema=schema):
            for local, remote in zip(fk.get("constrained_columns") or [], fk.get("referred_columns") or []):
                foreign[local] = (fk["referred_table"], remote)
        columns = []
        for column in inspector.get_columns(name, schema=schema):
            target = foreign.get(column["name"])
            columns.append(
                ColumnSchema(
                    name=column["name"],
                    data_type=normalize_type(column["type"]),
                    is_primary_key=column["name"] in primary,
                    is_foreign_key=target is not None,
                    fk_target_table=target[0] if target else None,
                    fk_target_column=target[1] if target else None,
                )
            )
        reflected.append((name, columns))
    return reflected


class RelationalAdapter:
    """Reflect tables from a Postgres or SQLite source and select their rows.

    Columns carry the real primary/foreign key flags from the catalog.
    """

    integration = "source.relational"

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine

    def _build_engine(self, ctx: SourceContext) -> AsyncEngine:
        config = ctx.config
        timeout_s = ctx.settings.connector_http_timeout_ms / 1000.0
        if isinstance(config, SqliteConfig):
            return create_async_engine(config.url(), connect_args={"timeout": timeout_s})
        assert isinstance(config, PostgresConfig)
        url = make_url(config.dsn)
        password = ctx.secrets.optional("password")
        if password:
            url = url.set(password=password)
        return create_async_engine(url, pool_pre_ping=True, connect_args={"timeout": timeout_s})

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: PostgresConfig | SqliteConfig = ctx.config  # type: ignore[assignment]
        schema = config.schema_name if isinstance(config, PostgresConfig) else None
        row_limit = config.row_limit or ctx.settings.relational_row_limit
        engine = self._engine or self._build_engine(ctx)
        owned = self._engine is None
        start = time.monotonic()
        tables: list[TableBatch] = []
        try:
            async with engine.connect() as conn:
                reflected = await conn.run_sync(_reflect, schema, config.tables)
                preparer = conn.dialect.identifier_preparer
                for name, columns in reflected:
                    qualified = preparer.quote(name)
                    if schema:
                        qualified = f"{preparer.quote_schema(schema)}.{qualified}"
                    result = await conn.execute(text(f"SELECT * FROM {qualified} LIMIT :limit"), {"limit": row_limit})
                    rows = [json_safe(dict(row)) for row in result.mappings().all()]
                    tables.append(TableBatch(name=name, columns=columns, rows=rows))
        except ConfigurationError:
            raise
        except NoSuchTableError as exc:
            raise ConfigurationError(f"Table not found in source: {exc}") from exc
        except DBAPIError as exc:
            record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            if type(exc.orig).__name__ in _AUTH_ERROR_NAMES:
                raise ConfigurationError("Source database rejected credentials") from exc
            raise TransientError(f"Source database error: {type(exc.orig).__name__}") from exc
        except (SQLAlchemyError, OSError) as exc:
            record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise TransientError(f"Source database unavailable: {type(exc).__name__}") from exc
        finally:
            if owned:
                await engine.dispose()
        record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        logger.info("relational_fetch_complete tables=%s rows=%s", len(tables), sum(len(t.rows) for t in tables))
        return FetchResult(
            tables=tables,
            stats={"tables": len(tables), "rows": sum(len(table.rows) for table in tables), "row_limit": row_limit},
            metadata={"dialect": config.connector_type, "schema": schema},
        )
