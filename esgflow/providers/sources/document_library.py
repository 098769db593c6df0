from __future__ import annotations

from collections import Counter
import logging
from typing import Any
from urllib.parse import quote

import httpx

from esgflow.domain.connector_configs import OneDriveConfig, SharePointConfig
from esgflow.providers.sources.base import (
    FetchResult,
    SourceContext,
    TableBatch,
    is_tabular,
    parse_tabular,
    response_json,
    send,
    table_batch,
    table_name_from,
)


logger = logging.getLogger(__name__)


def _extension(name: str) -> str:
    return name.rsplit(".", 1)[-1].lower() if "." in name else "none"


class _DocumentLibraryAdapter:
    integration = "source.document_library"

    async def _parse_files(
        self,
        client: httpx.AsyncClient,
        files: list[tuple[str, str, dict[str, str]]],
    ) -> dict[str, list[Any]]:
        # Download tabular files and stage each as its own table.
        tables: dict[str, list[Any]] = {}
        for name, url, headers in files:
            response = await send(client, "GET", url, integration=self.integration, headers=headers)
            tables.setdefault(table_name_from(name), []).extend(parse_tabular(name, response.content))
        return tables

    def _result(
        self,
        library: str,
        documents: list[dict[str, Any]],
        parsed: dict[str, list[Any]],
        metadata: dict[str, Any],
    ) -> FetchResult:
        file_types = Counter(_extension(str(doc.get("name") or "")) for doc in documents)
        tables: list[TableBatch] = [table_batch(f"{table_name_from(library)}_documents", documents)]
        tables.extend(table_batch(name, rows) for name, rows in sorted(parsed.items()))
        return FetchResult(
            tables=tables,
            stats={
                "documents": len(documents),
                "total_size": sum(int(doc.get("size") or 0) for doc in documents),
                "file_types": dict(file_types),
                "parsed_files": sum(1 for doc in documents if is_tabular(str(doc.get("name") or ""))),
            },
            metadata=metadata,
        )


class SharePointAdapter(_DocumentLibraryAdapter):
    integration = "source.sharepoint"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: SharePointConfig = ctx.config  # type: ignore[assignment]
        headers = {
            "Authorization": f"Bearer {ctx.secrets.get('token')}",
            "Accept": "application/json;odata=verbose",
        }
        library = config.library.replace("'", "''")
        url: str | None = (
            f"{config.site_url}/_api/web/lists/getbytitle('{library}')/items"
            "?$select=Id,Created,Modified,File/Name,File/Length,File/ServerRelativeUrl&$expand=File"
        )
        documents: list[dict[str, Any]] = []
        files: list[tuple[str, str, dict[str, str]]] = []
        pages = 0
        async with ctx.http_client_factory() as client:
            while url and pages < ctx.settings.connector_max_pages:
                response = await send(client, "GET", url, integration=self.integration, headers=headers)
                pages += 1
                body = response_json(response, integration=self.integration)
                data = body.get("d", {}) if isinstance(body, dict) else {}
                for item in data.get("results", []) or []:
                    file_info = item.get("File") or {}
                    name = file_info.get("Name") or ""
                    documents.append(
                        {
                            "id": item.get("Id", item.get("ID")),
                            "name": name,
                            "size": int(file_info.get("Length") or 0),
                            "server_relative_url": file_info.get("ServerRelativeUrl"),
                            "created_at": item.get("Created"),
                            "modified_at": item.get("Modified"),
                        }
                    )
                    relative = file_info.get("ServerRelativeUrl")
                    if config.parse_files and relative and is_tabular(name):
                        escaped = quote(relative.replace("'", "''"), safe="/")
                        files.append(
                            (
                                name,
                                f"{config.site_url}/_api/web/GetFileByServerRelativeUrl('{escaped}')/$value",
                                {"Authorization": headers["Authorization"]},
                            )
                        )
                url = data.get("__next")
            parsed = await self._parse_files(client, files)
        logger.info("sharepoint_fetch_complete site=%s documents=%s", config.site_url, len(documents))
        return self._result(
            config.library,
            documents,
            parsed,
            {"site_url": config.site_url, "library": config.library, "pages": pages},
        )


class OneDriveAdapter(_DocumentLibraryAdapter):
    integration = "source.onedrive"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: OneDriveConfig = ctx.config  # type: ignore[assignment]
        auth = {"Authorization": f"Bearer {ctx.secrets.get('token')}"}
        folder = config.folder_path.rstrip("/")
        if folder:
            url: str | None = f"{config.graph_url}/me/drive/root:{quote(folder)}:/children"
        else:
            url = f"{config.graph_url}/me/drive/root/children"
        documents: list[dict[str, Any]] = []
        files: list[tuple[str, str, dict[str, str]]] = []
        pages = 0
        async with ctx.http_client_factory() as client:
            while url and pages < ctx.settings.connector_max_pages:
                response = await send(client, "GET", url, integration=self.integration, headers=auth)
                pages += 1
                body = response_json(response, integration=self.integration)
                for item in body.get("value", []) or []:
                    if "folder" in item:
                        continue
                    name = item.get("name") or ""
                    documents.append(
                        {
                            "id": item.get("id"),
                            "name": name,
                            "size": int(item.get("size") or 0),
                            "mime_type": (item.get("file") or {}).get("mimeType"),
                            "web_url": item.get("webUrl"),
                            "created_at": item.get("createdDateTime"),
                            "modified_at": item.get("lastModifiedDateTime"),
                        }
                    )
                    if config.parse_files and is_tabular(name):
                        download = item.get("@microsoft.graph.downloadUrl")
                        if download:
                            # Pre-authenticated download URLs reject bearer tokens.
                            files.append((name, download, {}))
                        else:
                            files.append((name, f"{config.graph_url}/me/drive/items/{item.get('id')}/content", auth))
                url = body.get("@odata.nextLink")
            parsed = await self._parse_files(client, files)
        library = folder.rsplit("/", 1)[-1] or "onedrive"
        return self._result(library, documents, parsed, {"folder_path": config.folder_path, "pages": pages})
