from __future__ import annotations

import pytest

from esgflow.core.errors import ConfigurationError
from esgflow.domain.connector_configs import (
    JiraConfig,
    PostgresConfig,
    SqliteConfig,
    parse_connector_config,
    source_type_for,
    sqlite_data_root,
)
from esgflow.domain.descriptors import (
    ConvertUnitTransform,
    GroupByTransform,
    RatioFormula,
    SumTransform,
    formula_inputs,
    parse_formula,
    parse_transform,
)


def test_missing_transform_defaults_to_period_sum() -> None:
    assert parse_transform(None) == SumTransform()
    assert parse_transform({}) == SumTransform()


def test_transform_variants_parse() -> None:
    assert isinstance(parse_transform({"type": "group_by", "field": "gender"}), GroupByTransform)
    converted = parse_transform({"type": "convert_unit", "factor": 0.001})
    assert isinstance(converted, ConvertUnitTransform)
    assert converted.factor == 0.001


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "median"},
        {"type": "group_by"},
        {"type": "convert_unit"},
        {"type": "sum", "unexpected": True},
        "sum",
    ],
)
def test_invalid_transforms_are_configuration_errors(raw) -> None:
    with pytest.raises(ConfigurationError, match="Invalid transform descriptor"):
        parse_transform(raw)


def test_formula_inputs_follow_declaration_order() -> None:
    ratio = parse_formula({"type": "ratio", "numerator": "b", "denominator": "a"})
    assert isinstance(ratio, RatioFormula)
    assert formula_inputs(ratio) == ["b", "a"]
    assert formula_inputs(parse_formula({"type": "sum", "fields": ["x", "y"]})) == ["x", "y"]
    assert formula_inputs(parse_formula({"type": "field_sum", "field": "z"})) == ["z"]


def test_empty_sum_formula_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Invalid formula descriptor"):
        parse_formula({"type": "sum", "fields": []})


def test_source_type_lookup() -> None:
    assert source_type_for("aws_s3") == "object_store"
    assert source_type_for("rss_feed") == "syndication_feed"
    with pytest.raises(ConfigurationError, match="Unsupported connector type"):
        source_type_for("ftp")


def test_jira_config_requires_atlassian_host_and_email() -> None:
    config = parse_connector_config(
        "jira",
        {"jira_url": "https://acme.atlassian.net/", "project_key": "ESG", "email": "ops@acme.test"},
    )
    assert isinstance(config, JiraConfig)
    assert config.jira_url == "https://acme.atlassian.net"
    assert config.secret_names() == {"api_token": "JIRA_API_TOKEN"}

    with pytest.raises(ConfigurationError, match="Expected \\*.atlassian.net domain"):
        parse_connector_config(
            "jira", {"jira_url": "https://jira.acme.test", "project_key": "ESG", "email": "ops@acme.test"}
        )
    with pytest.raises(ConfigurationError, match="email is required"):
        parse_connector_config("jira", {"jira_url": "https://acme.atlassian.net", "project_key": "ESG"})


def test_config_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigurationError, match="Invalid sqlite configuration"):
        parse_connector_config("sqlite", {"database": "/tmp/x.db", "password": "hunter2"})


@pytest.mark.parametrize(
    ("connector_type", "config", "message"),
    [
        ("aws_s3", {"bucket": "Bad_Bucket"}, "Invalid S3 bucket name format"),
        ("azure_blob", {"storage_account": "UPPER", "container": "data"}, "Invalid storage account name format"),
        ("sharepoint", {"site_url": "https://example.com/sites/esg"}, "Invalid SharePoint URL format"),
        ("onedrive", {"folder_path": "reports"}, "Folder path must start with /"),
        ("slack", {"channel_id": "general"}, "Invalid Slack channel ID format"),
        ("teams", {"team_id": "team", "channel_id": "channel"}, "Invalid Team ID format"),
        ("rss_feed", {"feed_url": "ftp://feeds.test/esg"}, "Invalid feed URL format"),
        ("sap", {"api_url": "https://sap.test", "system_id": ""}, "system_id"),
    ],
)
def test_provider_specific_validation(connector_type: str, config: dict, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        parse_connector_config(connector_type, config)


def test_secret_refs_override_defaults() -> None:
    config = parse_connector_config(
        "slack", {"channel_id": "C12345678", "secret_refs": {"token": "ESG_SLACK_TOKEN"}}
    )
    assert config.secret_names() == {"token": "ESG_SLACK_TOKEN"}


@pytest.mark.parametrize("key", ["database_url", "AWS/KEY", "ESGFLOW_SECRET_ORG_OTHER_C1_TOKEN", ""])
def test_secret_refs_must_be_namespace_keys(key: str) -> None:
    with pytest.raises(ConfigurationError, match="secret_refs"):
        parse_connector_config("slack", {"channel_id": "C12345678", "secret_refs": {"token": key}})


def test_postgres_dsn_is_normalized_to_asyncpg() -> None:
    config = parse_connector_config("postgres", {"dsn": "postgresql://reader@db.internal/esg"})
    assert isinstance(config, PostgresConfig)
    assert config.dsn == "postgresql+asyncpg://reader@db.internal/esg"
    with pytest.raises(ConfigurationError, match="Invalid Postgres DSN"):
        parse_connector_config("postgres", {"dsn": "mysql://db.internal/esg"})


def test_sqlite_url_and_public_view() -> None:
    config = parse_connector_config("sqlite", {"database": "reports/esg.db", "jurisdiction": "DE"})
    assert isinstance(config, SqliteConfig)
    assert config.database_path() == sqlite_data_root() / "reports" / "esg.db"
    assert config.url() == f"sqlite+aiosqlite:///{sqlite_data_root() / 'reports' / 'esg.db'}"
    view = config.public_view()
    assert "connector_type" not in view
    assert view["jurisdiction"] == "DE"


@pytest.mark.parametrize("database", ["../../etc/esg.db", "/etc/esg.db", "reports/../../../esg.db"])
def test_sqlite_database_must_stay_inside_data_dir(database: str) -> None:
    with pytest.raises(ConfigurationError, match="database must be inside the SQLite data directory"):
        parse_connector_config("sqlite", {"database": database})


def test_sqlite_absolute_path_inside_data_dir_is_accepted() -> None:
    database = str(sqlite_data_root() / "esg.db")
    config = parse_connector_config("sqlite", {"database": database})
    assert config.database_path() == sqlite_data_root() / "esg.db"
