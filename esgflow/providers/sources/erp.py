from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from esgflow.core.errors import TransientError
from esgflow.domain.connector_configs import SapConfig
from esgflow.providers.sources.base import (
    FetchResult,
    SourceContext,
    flatten_record,
    response_json,
    send,
    table_batch,
)
from esgflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _entity_table(entity_set: str) -> str:
    # ESGData -> esg_data
    snake = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", entity_set)
    return re.sub(r"[^a-z0-9_]+", "_", snake.lower()).strip("_")


def _odata_rows(body: Any) -> tuple[list[Any], str | None]:
    # OData v2 wraps results in d.results; v4 uses value + @odata.nextLink.
    if isinstance(body, dict) and isinstance(body.get("d"), dict):
        data = body["d"]
        return list(data.get("results", []) or []), data.get("__next")
    if isinstance(body, dict) and isinstance(body.get("value"), list):
        return list(body["value"]), body.get("@odata.nextLink")
    raise TransientError("SAP response is not an OData collection")


def _clean(row: Any) -> Any:
    if not isinstance(row, dict):
        return row
    return flatten_record({key: value for key, value in row.items() if not key.startswith("__")}, max_depth=1)


class SapAdapter:
    """Read OData entity sets from an SAP gateway.

    When the primary endpoint fails transiently the adapter switches to
    ``fallback_api_url`` once for the rest of the run.
    """

    integration = "source.sap"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: SapConfig = ctx.config  # type: ignore[assignment]
        auth = httpx.BasicAuth(ctx.secrets.get("username"), ctx.secrets.get("password"))
        base = config.api_url
        fallback_used = False
        tables = []
        record_types: dict[str, int] = {}
        async with ctx.http_client_factory() as client:
            for entity_set in config.entity_sets:
                rows: list[Any] = []
                url: str | None = f"{base}{config.service_path}/{entity_set}"
                params: dict[str, str] | None = {"$format": "json"}
                pages = 0
                while url and pages < ctx.settings.connector_max_pages:
                    try:
                        response = await send(
                            client,
                            "GET",
                            url,
                            integration=self.integration,
                            auth=auth,
                            params=params,
                            headers={"Accept": "application/json"},
                        )
                    except TransientError as exc:
                        if fallback_used or not config.fallback_api_url:
                            raise
                        logger.warning(
                            "sap_fallback_endpoint system_id=%s entity_set=%s error=%s",
                            config.system_id,
                            entity_set,
                            exc,
                        )
                        increment_counter("sap_fallback_total")
                        fallback_used = True
                        url = url.replace(base, config.fallback_api_url, 1)
                        base = config.fallback_api_url
                        continue
                    pages += 1
                    page_rows, next_url = _odata_rows(response_json(response, integration=self.integration))
                    rows.extend(_clean(row) for row in page_rows)
                    url = next_url
                    # Next links already carry the query string.
                    params = None
                table = table_batch(_entity_table(entity_set), rows)
                record_types[table.name] = len(rows)
                tables.append(table)
        return FetchResult(
            tables=tables,
            stats={"record_types": record_types},
            metadata={"system_id": config.system_id, "endpoint": base, "fallback_used": fallback_used},
        )
