from __future__ import annotations

import base64
import io
import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
from sqlalchemy import create_engine, text

from esgflow.core.config import get_settings
from esgflow.core.errors import ConfigurationError, TransientError
from esgflow.domain.connector_configs import parse_connector_config
from esgflow.providers.sources import get_adapter, registered_types
from esgflow.providers.sources.base import (
    SourceContext,
    infer_columns,
    parse_tabular,
    send,
    table_name_from,
)
from esgflow.providers.sources.erp import SapAdapter
from esgflow.providers.sources.feed import RssFeedAdapter, parse_feed
from esgflow.providers.sources.issue_tracker import JiraAdapter
from esgflow.providers.sources.messaging import SlackAdapter, TeamsAdapter
from esgflow.providers.sources.object_storage import AzureBlobAdapter, S3Adapter
from esgflow.providers.sources.document_library import OneDriveAdapter
from esgflow.providers.sources.relational import RelationalAdapter
from esgflow.services.secrets import ResolvedSecrets
from esgflow.tests.utils.factories import mock_client_factory


TEAM_ID = "11111111-2222-3333-4444-555555555555"
CHANNEL_ID = "66666666-7777-8888-9999-000000000000"


def _ctx(
    connector_type: str,
    config: dict[str, Any],
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
    secrets: dict[str, str] | None = None,
) -> SourceContext:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request {request.url}")

    return SourceContext(
        connector_id="conn-1",
        organization_id="org-test",
        config=parse_connector_config(connector_type, config),
        secrets=ResolvedSecrets(values=secrets or {}),
        http_client_factory=mock_client_factory(handler or refuse),
        settings=get_settings(),
    )


def test_every_connector_type_has_an_adapter() -> None:
    assert registered_types() == sorted(
        [
            "aws_s3",
            "azure_blob",
            "jira",
            "onedrive",
            "postgres",
            "rss_feed",
            "sap",
            "sharepoint",
            "slack",
            "sqlite",
            "teams",
        ]
    )
    with pytest.raises(ConfigurationError):
        get_adapter("ftp")


def test_parse_tabular_csv_and_json_envelopes() -> None:
    rows = parse_tabular("usage.csv", b"\xef\xbb\xbfsite,kwh,ratio\nA,100,0.5\nB,,1e3\n")
    assert rows == [{"site": "A", "kwh": 100, "ratio": 0.5}, {"site": "B", "kwh": None, "ratio": 1000.0}]
    assert parse_tabular("x.json", b'{"data": [{"id": 1}]}') == [{"id": 1}]
    assert parse_tabular("x.json", b'{"id": 2}') == [{"id": 2}]
    with pytest.raises(TransientError):
        parse_tabular("x.json", b"{not json")


def test_infer_columns_merges_types() -> None:
    columns = infer_columns(
        [
            {"id": 1, "kwh": 10, "note": "x", "at": "2024-01-02"},
            {"id": 2, "kwh": 10.5, "note": 3, "at": None},
            "not a row",
        ]
    )
    assert [(column.name, column.data_type) for column in columns] == [
        ("id", "integer"),
        ("kwh", "numeric"),
        ("note", "text"),
        ("at", "timestamp"),
    ]
    assert columns[0].is_primary_key is True


def test_table_name_from_paths() -> None:
    assert table_name_from("reports/2024/Energy Usage.csv") == "energy_usage"
    assert table_name_from("---.json") == "data"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error", "code"),
    [(401, ConfigurationError, None), (403, ConfigurationError, None), (429, TransientError, 429), (502, TransientError, 502)],
)
async def test_send_maps_status_codes(status: int, error: type, code: int | None) -> None:
    client = mock_client_factory(lambda request: httpx.Response(status))()
    async with client:
        with pytest.raises(error) as excinfo:
            await send(client, "GET", "https://source.test/items", integration="test")
    if code is not None:
        assert excinfo.value.status_code == code


@pytest.mark.asyncio
async def test_send_maps_timeouts_to_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with mock_client_factory(handler)() as client:
        with pytest.raises(TransientError, match="timed out"):
            await send(client, "GET", "https://source.test/items", integration="test")


RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>ESG</title>
<item><guid>g-1</guid><title>Report</title><link>https://news.test/1</link>
<pubDate>Tue, 05 Mar 2024 10:00:00 GMT</pubDate><category>climate</category><category>esg</category></item>
</channel></rss>"""

ATOM = b"""<?xml version="1.0"?>
<feed xmlns="http://www.w3.org/2005/Atom">
<entry><id>urn:1</id><title>Update</title><link href="https://news.test/a"/>
<updated>2024-02-01T00:00:00Z</updated><category term="water"/></entry>
</feed>"""


def test_parse_feed_formats() -> None:
    feed_format, items = parse_feed(RSS)
    assert feed_format == "rss"
    assert items[0]["id"] == "g-1"
    assert items[0]["category"] == "climate,esg"

    feed_format, items = parse_feed(ATOM)
    assert feed_format == "atom"
    assert items[0]["link"] == "https://news.test/a"
    assert items[0]["published_at"] == "2024-02-01T00:00:00Z"

    with pytest.raises(TransientError):
        parse_feed(b"<html></html>")


@pytest.mark.asyncio
async def test_rss_adapter_stages_feed_items() -> None:
    ctx = _ctx("rss_feed", {"feed_url": "https://news.test/feed"}, lambda request: httpx.Response(200, content=RSS))
    result = await RssFeedAdapter().fetch(ctx)
    assert result.tables[0].name == "feed_items"
    assert result.stats == {"items": 1, "format": "rss"}


@pytest.mark.asyncio
async def test_jira_adapter_paginates_with_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        start = int(request.url.params["startAt"])
        issues = [
            {
                "id": str(start + index),
                "key": f"ESG-{start + index}",
                "fields": {"issuetype": {"name": "Task"}, "labels": ["a", "b"], "created": "2024-01-05T00:00:00Z"},
            }
            for index in range(2 if start == 0 else 1)
        ]
        return httpx.Response(200, json={"issues": issues, "total": 3})

    ctx = _ctx(
        "jira",
        {"jira_url": "https://acme.atlassian.net", "project_key": "ESG", "email": "ops@acme.test"},
        handler,
        {"api_token": "tok"},
    )
    result = await JiraAdapter().fetch(ctx)

    assert [request.url.params["startAt"] for request in seen] == ["0", "2"]
    expected = "Basic " + base64.b64encode(b"ops@acme.test:tok").decode()
    assert seen[0].headers["Authorization"] == expected
    table = result.tables[0]
    assert table.name == "esg_issues"
    assert table.rows[0]["labels"] == "a,b"
    assert table.rows[0]["created_at"] == "2024-01-05T00:00:00Z"
    assert result.stats["issue_types"] == {"task": 3}


@pytest.mark.asyncio
async def test_slack_keeps_collected_pages_when_rate_limited() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "cursor" in request.url.params:
            return httpx.Response(429)
        return httpx.Response(
            200,
            json={
                "ok": True,
                "messages": [{"ts": "1709632800.0001", "text": "hi", "reactions": [{"count": 2}]}],
                "has_more": True,
                "response_metadata": {"next_cursor": "next"},
            },
        )

    ctx = _ctx("slack", {"channel_id": "C12345678"}, handler, {"token": "xoxb"})
    result = await SlackAdapter().fetch(ctx)
    assert result.metadata["partial"] is True
    assert result.tables[0].rows[0]["reaction_count"] == 2


@pytest.mark.asyncio
async def test_slack_auth_errors_are_configuration_errors() -> None:
    ctx = _ctx(
        "slack",
        {"channel_id": "C12345678"},
        lambda request: httpx.Response(200, json={"ok": False, "error": "invalid_auth"}),
        {"token": "xoxb"},
    )
    with pytest.raises(ConfigurationError, match="invalid_auth"):
        await SlackAdapter().fetch(ctx)


@pytest.mark.asyncio
async def test_teams_follows_next_links() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json={"value": [{"id": "m2", "createdDateTime": "2024-02-01T00:00:00Z"}]})
        return httpx.Response(
            200,
            json={
                "value": [{"id": "m1", "from": {"user": {"displayName": "Ana"}}, "body": {"content": "hello"}}],
                "@odata.nextLink": f"https://graph.microsoft.com/v1.0/teams/{TEAM_ID}/messages?page=2",
            },
        )

    ctx = _ctx("teams", {"team_id": TEAM_ID, "channel_id": CHANNEL_ID}, handler, {"token": "graph"})
    result = await TeamsAdapter().fetch(ctx)
    assert [row["id"] for row in result.tables[0].rows] == ["m1", "m2"]
    assert result.tables[0].rows[0]["sender"] == "Ana"
    assert result.metadata["pages"] == 2


@pytest.mark.asyncio
async def test_sap_switches_to_fallback_once() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "primary.sap.test":
            return httpx.Response(503)
        return httpx.Response(
            200,
            json={"d": {"results": [{"__metadata": {}, "Plant": "P1", "Amount": {"Value": 5}}]}},
        )

    ctx = _ctx(
        "sap",
        {
            "api_url": "https://primary.sap.test",
            "fallback_api_url": "https://backup.sap.test",
            "system_id": "PRD",
            "entity_sets": ["ESGData", "PlantEnergy"],
        },
        handler,
        {"username": "u", "password": "p"},
    )
    result = await SapAdapter().fetch(ctx)

    assert hosts == ["primary.sap.test", "backup.sap.test", "backup.sap.test"]
    assert [table.name for table in result.tables] == ["esg_data", "plant_energy"]
    assert result.tables[0].rows == [{"Plant": "P1", "Amount_Value": 5}]
    assert result.metadata["fallback_used"] is True


@pytest.mark.asyncio
async def test_sap_without_fallback_raises_transient() -> None:
    ctx = _ctx(
        "sap",
        {"api_url": "https://primary.sap.test", "system_id": "PRD"},
        lambda request: httpx.Response(503),
        {"username": "u", "password": "p"},
    )
    with pytest.raises(TransientError):
        await SapAdapter().fetch(ctx)


@pytest.mark.asyncio
async def test_azure_blob_lists_and_parses_tabular_blobs() -> None:
    listing = b"""<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults><Blobs>
<Blob><Name>energy.csv</Name><Properties><Content-Length>20</Content-Length></Properties></Blob>
<Blob><Name>notes.pdf</Name><Properties><Content-Length>5</Content-Length></Properties></Blob>
</Blobs><NextMarker/></EnumerationResults>"""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["sig"] == "secret"
        if request.url.params.get("comp") == "list":
            return httpx.Response(200, content=listing)
        return httpx.Response(200, content=b"site,kwh\nA,10\n")

    ctx = _ctx(
        "azure_blob",
        {"storage_account": "esgdata", "container": "exports"},
        handler,
        {"sas_token": "?sv=2024&sig=secret"},
    )
    result = await AzureBlobAdapter().fetch(ctx)
    assert [table.name for table in result.tables] == ["energy"]
    assert result.tables[0].rows == [{"site": "A", "kwh": 10}]
    assert result.stats["file_types"] == {"csv": 1, "pdf": 1}
    assert result.stats["total_size"] == 25


class _FakeS3:
    def __init__(self) -> None:
        self.objects = {"exports/scope1.json": b'[{"id": 1, "co2": 4.5}]', "exports/readme.txt": b"hi"}

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        return {
            "Contents": [{"Key": key, "Size": len(body)} for key, body in self.objects.items()],
            "IsTruncated": False,
        }

    def get_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        return {"Body": io.BytesIO(self.objects[Key])}


@pytest.mark.asyncio
async def test_s3_adapter_reads_tabular_objects() -> None:
    ctx = _ctx("aws_s3", {"bucket": "esg-exports", "prefix": "exports/"}, secrets={"access_key_id": "a", "secret_access_key": "b"})
    result = await S3Adapter(client=_FakeS3()).fetch(ctx)
    assert [table.name for table in result.tables] == ["scope1"]
    assert result.tables[0].rows == [{"id": 1, "co2": 4.5}]
    assert result.stats["file_types"] == {"json": 1, "txt": 1}


@pytest.mark.asyncio
async def test_onedrive_uses_preauthenticated_download_urls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "download.test":
            assert "Authorization" not in request.headers
            return httpx.Response(200, content=json.dumps([{"id": 1, "kwh": 3}]).encode())
        return httpx.Response(
            200,
            json={
                "value": [
                    {"folder": {}, "name": "archive"},
                    {
                        "id": "f1",
                        "name": "Energy.json",
                        "size": 10,
                        "@microsoft.graph.downloadUrl": "https://download.test/f1",
                    },
                ]
            },
        )

    ctx = _ctx("onedrive", {"folder_path": "/ESG Reports"}, handler, {"token": "graph"})
    result = await OneDriveAdapter().fetch(ctx)
    assert [table.name for table in result.tables] == ["esg_reports_documents", "energy"]
    assert result.tables[1].rows == [{"id": 1, "kwh": 3}]


def _sqlite_source(path: Path) -> None:
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE facilities (id INTEGER PRIMARY KEY, country TEXT)"))
        conn.execute(
            text(
                "CREATE TABLE energy_usage (id INTEGER PRIMARY KEY, facility_id INTEGER "
                "REFERENCES facilities(id), kwh NUMERIC(12, 2), recorded_at TEXT)"
            )
        )
        conn.execute(text("INSERT INTO facilities VALUES (1, 'DE')"))
        conn.execute(text("INSERT INTO energy_usage VALUES (1, 1, 10.5, '2024-01-02'), (2, 1, 4, '2024-02-02')"))
    engine.dispose()


@pytest.mark.asyncio
async def test_relational_adapter_reflects_keys_and_rows(tmp_path: Path) -> None:
    database = tmp_path / "source.db"
    _sqlite_source(database)
    ctx = _ctx("sqlite", {"database": str(database), "row_limit": 1})
    result = await RelationalAdapter().fetch(ctx)

    tables = {table.name: table for table in result.tables}
    assert sorted(tables) == ["energy_usage", "facilities"]
    columns = {column.name: column for column in tables["energy_usage"].columns}
    assert columns["id"].is_primary_key is True
    assert columns["facility_id"].is_foreign_key is True
    assert (columns["facility_id"].fk_target_table, columns["facility_id"].fk_target_column) == ("facilities", "id")
    assert columns["kwh"].data_type == "numeric"
    assert len(tables["energy_usage"].rows) == 1


@pytest.mark.asyncio
async def test_relational_adapter_rejects_unknown_tables(tmp_path: Path) -> None:
    database = tmp_path / "source.db"
    _sqlite_source(database)
    ctx = _ctx("sqlite", {"database": str(database), "tables": ["energy_usage", "water"]})
    with pytest.raises(ConfigurationError, match="water"):
        await RelationalAdapter().fetch(ctx)
