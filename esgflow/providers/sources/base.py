from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import io
import json
import re
import time
from typing import Any, Callable, Protocol
from uuid import UUID

import httpx

from esgflow.core.config import Settings, get_settings
from esgflow.core.errors import ConfigurationError, TransientError
from esgflow.domain.connector_configs import ConnectorConfigBase
from esgflow.services.secrets import ResolvedSecrets
from esgflow.services.telemetry import record_external_call


HttpClientFactory = Callable[[], httpx.AsyncClient]

TABULAR_SUFFIXES = (".csv", ".json")


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    data_type: str
    is_primary_key: bool = False
    is_foreign_key: bool = False
    fk_target_table: str | None = None
    fk_target_column: str | None = None


@dataclass
class TableBatch:
    name: str
    columns: list[ColumnSchema]
    # Rows are normally dicts; anything else is counted as failed by the engine.
    rows: list[Any]


@dataclass
class FetchResult:
    tables: list[TableBatch] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def schema_discovered(self) -> bool:
        return any(table.columns for table in self.tables)


@dataclass(frozen=True)
class SourceContext:
    connector_id: str
    organization_id: str
    config: ConnectorConfigBase
    secrets: ResolvedSecrets
    http_client_factory: HttpClientFactory
    settings: Settings


class SourceAdapter(Protocol):
    async def fetch(self, ctx: SourceContext) -> FetchResult:
        ...


def default_http_client_factory() -> httpx.AsyncClient:
    # Every outbound connector call carries an explicit timeout.
    timeout_s = get_settings().connector_http_timeout_ms / 1000.0
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), follow_redirects=True)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    integration: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request and translate failures into the error taxonomy.

    Timeouts, transport errors, 429 and other non-2xx responses become
    ``TransientError``; 401/403 become ``ConfigurationError``.
    """
    start = time.monotonic()
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
        raise TransientError(f"{integration} request timed out") from exc
    except httpx.TransportError as exc:
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
        raise TransientError(f"{integration} connection failed: {type(exc).__name__}") from exc
    latency_ms = (time.monotonic() - start) * 1000.0
    if response.status_code in {401, 403}:
        record_external_call(integration=integration, latency_ms=latency_ms, success=False)
        raise ConfigurationError(f"{integration} rejected credentials (HTTP {response.status_code})")
    if response.status_code == 429:
        record_external_call(integration=integration, latency_ms=latency_ms, success=False)
        raise TransientError(f"{integration} rate limited (HTTP 429)", status_code=429)
    if response.status_code >= 300:
        record_external_call(integration=integration, latency_ms=latency_ms, success=False)
        raise TransientError(
            f"{integration} request failed (HTTP {response.status_code})",
            status_code=response.status_code,
        )
    record_external_call(integration=integration, latency_ms=latency_ms, success=True)
    return response


def response_json(response: httpx.Response, *, integration: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TransientError(f"{integration} returned a non-JSON body") from exc


def json_safe(value: Any) -> Any:
    # Normalize driver and parser values into JSON-serializable payload values.
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    return value


_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ][\d:.]+(Z|[+-]\d{2}:?\d{2})?)?$")


def _value_type(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "numeric"
    if isinstance(value, (dict, list)):
        return "jsonb"
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        return "timestamp"
    return "text"


def _merge_types(current: str | None, new: str | None) -> str | None:
    if new is None:
        return current
    if current is None or current == new:
        return new
    if {current, new} == {"integer", "numeric"}:
        return "numeric"
    return "text"


def infer_columns(rows: list[Any]) -> list[ColumnSchema]:
    """Infer a column list from row values.

    Columns keep first-seen order. A column named ``id`` is flagged as the
    primary key; no foreign keys are inferred for non-relational sources.
    """
    order: list[str] = []
    types: dict[str, str | None] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        for key, value in row.items():
            if key not in types:
                order.append(key)
                types[key] = None
            types[key] = _merge_types(types[key], _value_type(value))
    return [
        ColumnSchema(name=name, data_type=types[name] or "text", is_primary_key=name == "id")
        for name in order
    ]


def table_batch(name: str, rows: list[Any]) -> TableBatch:
    return TableBatch(name=name, columns=infer_columns(rows), rows=rows)


def table_name_from(value: str) -> str:
    # File stems and labels become lower snake_case table names.
    stem = value.rsplit("/", 1)[-1]
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    cleaned = re.sub(r"[^a-z0-9]+", "_", stem.lower()).strip("_")
    return cleaned or "data"


def _coerce_cell(value: str) -> Any:
    text = value.strip()
    if text == "":
        return None
    if re.fullmatch(r"-?\d+", text):
        try:
            return int(text)
        except ValueError:
            return text
    if re.fullmatch(r"-?\d+\.\d*|-?\d*\.\d+|-?\d+(\.\d+)?[eE][-+]?\d+", text):
        try:
            return float(text)
        except ValueError:
            return text
    return text


def is_tabular(name: str) -> bool:
    return name.lower().endswith(TABULAR_SUFFIXES)


def parse_tabular(name: str, content: bytes) -> list[Any]:
    """Parse a CSV or JSON file body into rows.

    Numeric CSV cells are coerced to int/float. JSON accepts a list, a
    ``rows``/``data``/``items``/``records`` envelope or a single object.
    """
    text = content.decode("utf-8-sig", errors="replace")
    if name.lower().endswith(".csv"):
        reader = csv.DictReader(io.StringIO(text))
        return [
            {key.strip(): _coerce_cell(value or "") for key, value in row.items() if key is not None}
            for row in reader
        ]
    try:
        document = json.loads(text)
    except ValueError as exc:
        raise TransientError(f"Could not parse {name} as JSON") from exc
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        for key in ("rows", "data", "items", "records", "value"):
            if isinstance(document.get(key), list):
                return document[key]
        return [document]
    return [document]


def flatten_record(record: dict[str, Any], *, prefix: str = "", max_depth: int = 2) -> dict[str, Any]:
    # Nested objects become prefix_key columns; lists are kept as JSON values.
    flat: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict) and max_depth > 0:
            flat.update(flatten_record(value, prefix=f"{name}_", max_depth=max_depth - 1))
        else:
            flat[name] = json_safe(value)
    return flat


_ADAPTERS: dict[str, Callable[[], SourceAdapter]] = {}


def register_adapter(*connector_types: str) -> Callable[[type], type]:
    def decorator(cls: type) -> type:
        for connector_type in connector_types:
            _ADAPTERS[connector_type] = cls
        return cls

    return decorator


def get_adapter(connector_type: str) -> SourceAdapter:
    factory = _ADAPTERS.get(connector_type)
    if factory is None:
        raise ConfigurationError(f"Unsupported connector type: {connector_type}")
    return factory()


def registered_types() -> list[str]:
    return sorted(_ADAPTERS)
