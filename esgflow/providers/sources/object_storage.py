from __future__ import annotations

import asyncio
from collections import Counter
import logging
import time
from typing import Any
import xml.etree.ElementTree as ET

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
import httpx

from esgflow.core.errors import ConfigurationError, TransientError
from esgflow.domain.connector_configs import AwsS3Config, AzureBlobConfig
from esgflow.providers.sources.base import (
    FetchResult,
    SourceContext,
    is_tabular,
    parse_tabular,
    send,
    table_batch,
    table_name_from,
)
from esgflow.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_S3_AUTH_CODES = {"AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken", "NoSuchBucket"}


def _extension(key: str) -> str:
    return key.rsplit(".", 1)[-1].lower() if "." in key.rsplit("/", 1)[-1] else "none"


def _merge_rows(tables: dict[str, list[Any]], name: str, rows: list[Any]) -> None:
    tables.setdefault(name, []).extend(rows)


class S3Adapter:
    """Read CSV/JSON objects from an S3 bucket.

    boto3 is synchronous, so each call runs on a worker thread.
    """

    integration = "source.aws_s3"

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    def _get_client(self, ctx: SourceContext) -> Any:
        if self._client is not None:
            return self._client
        config: AwsS3Config = ctx.config  # type: ignore[assignment]
        timeout_s = ctx.settings.connector_http_timeout_ms / 1000.0
        self._client = boto3.client(
            "s3",
            region_name=config.region,
            aws_access_key_id=ctx.secrets.get("access_key_id"),
            aws_secret_access_key=ctx.secrets.get("secret_access_key"),
            endpoint_url=config.endpoint_url,
            config=BotoConfig(connect_timeout=timeout_s, read_timeout=timeout_s, retries={"max_attempts": 1}),
        )
        return self._client

    async def _call(self, func: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(func, **kwargs)
        except ClientError as exc:
            record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            code = exc.response.get("Error", {}).get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in _S3_AUTH_CODES or status in {401, 403}:
                raise ConfigurationError(f"S3 request rejected: {code or status}") from exc
            raise TransientError(f"S3 request failed: {code or status}", status_code=status) from exc
        except BotoCoreError as exc:
            record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            error_name = exc.__class__.__name__
            if error_name in {"NoCredentialsError", "PartialCredentialsError"}:
                raise ConfigurationError("AWS credentials not configured") from exc
            raise TransientError(f"S3 request failed: {error_name}") from exc
        record_external_call(integration=self.integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return response

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: AwsS3Config = ctx.config  # type: ignore[assignment]
        client = self._get_client(ctx)
        objects: list[dict[str, Any]] = []
        token: str | None = None
        pages = 0
        while len(objects) < config.max_objects and pages < ctx.settings.connector_max_pages:
            kwargs: dict[str, Any] = {
                "Bucket": config.bucket,
                "Prefix": config.prefix,
                "MaxKeys": min(1000, config.max_objects - len(objects)),
            }
            if token:
                kwargs["ContinuationToken"] = token
            page = await self._call(client.list_objects_v2, **kwargs)
            pages += 1
            objects.extend(page.get("Contents", []) or [])
            if not page.get("IsTruncated"):
                break
            token = page.get("NextContinuationToken")
        objects = objects[: config.max_objects]

        tables: dict[str, list[Any]] = {}
        file_types: Counter[str] = Counter()
        total_size = 0
        for obj in objects:
            key = obj.get("Key", "")
            total_size += int(obj.get("Size") or 0)
            file_types[_extension(key)] += 1
            if not is_tabular(key):
                continue
            body = await self._call(client.get_object, Bucket=config.bucket, Key=key)
            content = await asyncio.to_thread(body["Body"].read)
            _merge_rows(tables, table_name_from(key), parse_tabular(key, content))
        logger.info("s3_fetch_complete bucket=%s objects=%s tables=%s", config.bucket, len(objects), len(tables))
        return FetchResult(
            tables=[table_batch(name, rows) for name, rows in sorted(tables.items())],
            stats={"objects": len(objects), "total_size": total_size, "file_types": dict(file_types)},
            metadata={"bucket": config.bucket, "region": config.region, "prefix": config.prefix},
        )


class AzureBlobAdapter:
    integration = "source.azure_blob"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: AzureBlobConfig = ctx.config  # type: ignore[assignment]
        # The SAS token is a query string; keep it out of logged URLs.
        sas = httpx.QueryParams(ctx.secrets.get("sas_token").lstrip("?"))
        container_url = f"{config.base_url()}/{config.container}"
        blobs: list[tuple[str, int]] = []
        tables: dict[str, list[Any]] = {}
        file_types: Counter[str] = Counter()
        async with ctx.http_client_factory() as client:
            marker: str | None = None
            pages = 0
            while len(blobs) < config.max_objects and pages < ctx.settings.connector_max_pages:
                params = sas.merge({"restype": "container", "comp": "list", "maxresults": str(config.max_objects)})
                if config.prefix:
                    params = params.set("prefix", config.prefix)
                if marker:
                    params = params.set("marker", marker)
                response = await send(client, "GET", container_url, integration=self.integration, params=params)
                pages += 1
                page_blobs, marker = _parse_blob_listing(response.content)
                blobs.extend(page_blobs)
                if not marker:
                    break
            blobs = blobs[: config.max_objects]
            for name, _size in blobs:
                file_types[_extension(name)] += 1
                if not is_tabular(name):
                    continue
                response = await send(
                    client,
                    "GET",
                    f"{container_url}/{name}",
                    integration=self.integration,
                    params=sas,
                )
                _merge_rows(tables, table_name_from(name), parse_tabular(name, response.content))
        return FetchResult(
            tables=[table_batch(name, rows) for name, rows in sorted(tables.items())],
            stats={"objects": len(blobs), "total_size": sum(size for _, size in blobs), "file_types": dict(file_types)},
            metadata={"storage_account": config.storage_account, "container": config.container},
        )


def _parse_blob_listing(body: bytes) -> tuple[list[tuple[str, int]], str | None]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise TransientError("Azure blob listing is not valid XML") from exc
    blobs: list[tuple[str, int]] = []
    for blob in root.iter("Blob"):
        name = blob.findtext("Name") or ""
        size = blob.findtext("Properties/Content-Length") or "0"
        blobs.append((name, int(size) if size.isdigit() else 0))
    marker = root.findtext("NextMarker") or None
    return blobs, marker
