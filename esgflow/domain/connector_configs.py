from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Any, ClassVar, Literal, Union

import httpx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
)

from esgflow.core.config import get_settings
from esgflow.core.errors import ConfigurationError


# Fixed source categories; connector_type is the provider kind within a category.
SOURCE_TYPES: dict[str, str] = {
    "aws_s3": "object_store",
    "azure_blob": "blob_store",
    "sharepoint": "document_library",
    "onedrive": "document_library",
    "sap": "erp",
    "jira": "issue_tracker",
    "slack": "messaging_channel",
    "teams": "messaging_channel",
    "rss_feed": "syndication_feed",
    "postgres": "relational_database",
    "sqlite": "relational_database",
}

SYNC_CADENCES = ("hourly", "daily", "weekly", "monthly", "manual")

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
_STORAGE_ACCOUNT_RE = re.compile(r"^[a-z0-9]{3,24}$")
_CONTAINER_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PROJECT_KEY_RE = re.compile(r"^[A-Z][A-Z0-9]+$")
_SLACK_CHANNEL_RE = re.compile(r"^C[A-Z0-9]{8,}$")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
# Keys within the per-connector secret namespace, e.g. API_TOKEN.
_SECRET_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]{0,63}$")


def _http_url(value: str, *, label: str) -> str:
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValueError(f"Invalid {label} format") from exc
    if url.scheme not in {"http", "https"} or not url.host:
        raise ValueError(f"Invalid {label} format")
    return value.rstrip("/")


class ConnectorConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Logical secret name -> key within the connector secret namespace.
    required_secrets: ClassVar[dict[str, str]] = {}

    secret_refs: dict[str, str] = Field(default_factory=dict)
    # Reporting period bucket for staged rows.
    period_granularity: Literal["month", "quarter"] = "month"
    # Payload field holding the record date; autodetected when unset.
    period_field: str | None = None
    # Where the source data resides, for cross-border lineage.
    jurisdiction: str | None = None

    @field_validator("secret_refs")
    @classmethod
    def _namespaced_secret_keys(cls, value: dict[str, str]) -> dict[str, str]:
        for key in value.values():
            if not _SECRET_KEY_RE.match(key) or key.startswith("ESGFLOW_"):
                raise ValueError(f"Invalid secret key {key!r}. Expected an uppercase key such as API_TOKEN")
        return value

    def secret_names(self) -> dict[str, str]:
        # Declared refs override the provider defaults and may add extra secrets.
        names = dict(self.required_secrets)
        names.update(self.secret_refs)
        return names

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"connector_type"})


class AwsS3Config(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {
        "access_key_id": "AWS_ACCESS_KEY_ID",
        "secret_access_key": "AWS_SECRET_ACCESS_KEY",
    }

    connector_type: Literal["aws_s3"] = "aws_s3"
    bucket: str
    region: str = "us-east-1"
    prefix: str = ""
    endpoint_url: str | None = None
    max_objects: int = Field(default=100, ge=1, le=1000)

    @field_validator("bucket")
    @classmethod
    def _bucket_format(cls, value: str) -> str:
        if not _BUCKET_RE.match(value):
            raise ValueError("Invalid S3 bucket name format")
        return value


class AzureBlobConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"sas_token": "AZURE_SAS_TOKEN"}

    connector_type: Literal["azure_blob"] = "azure_blob"
    storage_account: str
    container: str
    prefix: str = ""
    endpoint_url: str | None = None
    max_objects: int = Field(default=100, ge=1, le=5000)

    @field_validator("storage_account")
    @classmethod
    def _account_format(cls, value: str) -> str:
        if not _STORAGE_ACCOUNT_RE.match(value):
            raise ValueError("Invalid storage account name format")
        return value

    @field_validator("container")
    @classmethod
    def _container_format(cls, value: str) -> str:
        if not _CONTAINER_RE.match(value):
            raise ValueError("Invalid container name format")
        return value

    def base_url(self) -> str:
        return (self.endpoint_url or f"https://{self.storage_account}.blob.core.windows.net").rstrip("/")


class SharePointConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"token": "SHAREPOINT_TOKEN"}

    connector_type: Literal["sharepoint"] = "sharepoint"
    site_url: str
    library: str = "Documents"
    parse_files: bool = True

    @field_validator("site_url")
    @classmethod
    def _sharepoint_host(cls, value: str) -> str:
        value = _http_url(value, label="SharePoint URL")
        if "sharepoint.com" not in httpx.URL(value).host:
            raise ValueError("Invalid SharePoint URL format")
        return value


class OneDriveConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"token": "ONEDRIVE_TOKEN"}

    connector_type: Literal["onedrive"] = "onedrive"
    folder_path: str
    graph_url: str = "https://graph.microsoft.com/v1.0"
    parse_files: bool = True

    @field_validator("folder_path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("Folder path must start with /")
        return value


class SapConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {
        "username": "SAP_USERNAME",
        "password": "SAP_PASSWORD",
    }

    connector_type: Literal["sap"] = "sap"
    api_url: str
    system_id: str = Field(min_length=1)
    # Secondary gateway used once per run when the primary is unavailable.
    fallback_api_url: str | None = None
    service_path: str = "/sap/opu/odata/sap/API_ESG_DATA"
    entity_sets: list[str] = Field(default_factory=lambda: ["ESGData"], min_length=1)

    @field_validator("api_url", "fallback_api_url")
    @classmethod
    def _api_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _http_url(value, label="SAP API URL")


class JiraConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"api_token": "JIRA_API_TOKEN"}

    connector_type: Literal["jira"] = "jira"
    jira_url: str
    project_key: str
    email: str
    jql: str | None = None
    max_results: int = Field(default=50, ge=1, le=100)

    @field_validator("jira_url")
    @classmethod
    def _atlassian_host(cls, value: str) -> str:
        value = _http_url(value, label="Jira URL")
        if "atlassian.net" not in httpx.URL(value).host:
            raise ValueError("Invalid Jira URL format. Expected *.atlassian.net domain")
        return value

    @field_validator("email")
    @classmethod
    def _email_format(cls, value: str) -> str:
        if not _EMAIL_RE.match(value):
            raise ValueError("Invalid email format")
        return value

    @field_validator("project_key")
    @classmethod
    def _project_key_format(cls, value: str) -> str:
        if not _PROJECT_KEY_RE.match(value):
            raise ValueError("Invalid project key format. Should be uppercase letters/numbers")
        return value


class SlackConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"token": "SLACK_TOKEN"}

    connector_type: Literal["slack"] = "slack"
    channel_id: str
    api_url: str = "https://slack.com/api"
    page_limit: int = Field(default=100, ge=1, le=1000)

    @field_validator("channel_id")
    @classmethod
    def _channel_format(cls, value: str) -> str:
        if not _SLACK_CHANNEL_RE.match(value):
            raise ValueError(
                "Invalid Slack channel ID format. Should start with C followed by alphanumeric characters"
            )
        return value


class TeamsConfig(ConnectorConfigBase):
    required_secrets: ClassVar[dict[str, str]] = {"token": "TEAMS_TOKEN"}

    connector_type: Literal["teams"] = "teams"
    team_id: str
    channel_id: str
    graph_url: str = "https://graph.microsoft.com/v1.0"

    @field_validator("team_id", "channel_id")
    @classmethod
    def _uuid_format(cls, value: str, info) -> str:
        if not _UUID_RE.match(value):
            label = "Team ID" if info.field_name == "team_id" else "Channel ID"
            raise ValueError(f"Invalid {label} format. Expected UUID format")
        return value


class RssFeedConfig(ConnectorConfigBase):
    connector_type: Literal["rss_feed"] = "rss_feed"
    feed_url: str
    table_name: str = "feed_items"

    @field_validator("feed_url")
    @classmethod
    def _feed_url(cls, value: str) -> str:
        return _http_url(value, label="feed URL")


class _RelationalConfig(ConnectorConfigBase):
    # Restrict discovery to these tables; all reflected tables when unset.
    tables: list[str] | None = None
    row_limit: int | None = Field(default=None, ge=1)


class PostgresConfig(_RelationalConfig):
    connector_type: Literal["postgres"] = "postgres"
    # SQLAlchemy URL without the password; a `password` secret ref is injected at connect time.
    dsn: str
    schema_name: str | None = None

    @field_validator("dsn")
    @classmethod
    def _postgres_dsn(cls, value: str) -> str:
        if not value.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("Invalid Postgres DSN. Expected postgresql+asyncpg://")
        if value.startswith("postgresql://"):
            value = "postgresql+asyncpg://" + value[len("postgresql://"):]
        return value


def sqlite_data_root() -> Path:
    return Path(get_settings().sqlite_data_dir).resolve()


class SqliteConfig(_RelationalConfig):
    connector_type: Literal["sqlite"] = "sqlite"
    # Relative paths are resolved against the SQLite data directory.
    database: str = Field(min_length=1)

    @field_validator("database")
    @classmethod
    def _inside_data_dir(cls, value: str) -> str:
        root = sqlite_data_root()
        if not (root / value).resolve().is_relative_to(root):
            raise ValueError("database must be inside the SQLite data directory")
        return value

    def database_path(self) -> Path:
        return (sqlite_data_root() / self.database).resolve()

    def url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path()}"


ConnectorConfig = Annotated[
    Union[
        AwsS3Config,
        AzureBlobConfig,
        SharePointConfig,
        OneDriveConfig,
        SapConfig,
        JiraConfig,
        SlackConfig,
        TeamsConfig,
        RssFeedConfig,
        PostgresConfig,
        SqliteConfig,
    ],
    Field(discriminator="connector_type"),
]

_config_adapter: TypeAdapter[Any] = TypeAdapter(ConnectorConfig)


def source_type_for(connector_type: str) -> str:
    try:
        return SOURCE_TYPES[connector_type]
    except KeyError as exc:
        raise ConfigurationError(f"Unsupported connector type: {connector_type}") from exc


def parse_connector_config(connector_type: str, config: dict[str, Any] | None) -> ConnectorConfigBase:
    # Reject unknown provider kinds before pydantic reports a discriminator error.
    source_type_for(connector_type)
    raw = dict(config or {})
    raw["connector_type"] = connector_type
    try:
        return _config_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != connector_type)
        message = str(first.get("msg", exc)).removeprefix("Value error, ")
        if first.get("type") == "missing":
            message = f"{field} is required"
        elif field:
            message = f"{field}: {message}"
        raise ConfigurationError(f"Invalid {connector_type} configuration: {message}") from exc
