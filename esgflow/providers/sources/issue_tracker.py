from __future__ import annotations

from collections import Counter
from typing import Any

import httpx

from esgflow.domain.connector_configs import JiraConfig
from esgflow.providers.sources.base import FetchResult, SourceContext, json_safe, response_json, send, table_batch


def _field_value(value: Any) -> Any:
    # Jira wraps most field values in objects; keep their display label.
    if isinstance(value, dict):
        for key in ("name", "value", "displayName", "key"):
            if key in value:
                return value[key]
        return json_safe(value)
    if isinstance(value, list):
        labels = [_field_value(item) for item in value]
        if all(isinstance(label, str) for label in labels):
            return ",".join(labels)
        return json_safe(labels)
    return json_safe(value)


def flatten_issue(issue: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {"id": issue.get("id"), "key": issue.get("key")}
    for name, value in (issue.get("fields") or {}).items():
        if name in row:
            continue
        row[name] = _field_value(value)
    # Common aliases used for period derivation.
    if "created" in row:
        row.setdefault("created_at", row["created"])
    return row


class JiraAdapter:
    integration = "source.jira"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: JiraConfig = ctx.config  # type: ignore[assignment]
        auth = httpx.BasicAuth(config.email, ctx.secrets.get("api_token"))
        jql = config.jql or f"project={config.project_key}"
        issues: list[dict[str, Any]] = []
        start_at = 0
        total: int | None = None
        pages = 0
        async with ctx.http_client_factory() as client:
            while pages < ctx.settings.connector_max_pages:
                response = await send(
                    client,
                    "GET",
                    f"{config.jira_url}/rest/api/3/search",
                    integration=self.integration,
                    auth=auth,
                    headers={"Accept": "application/json"},
                    params={"jql": jql, "startAt": start_at, "maxResults": config.max_results},
                )
                pages += 1
                body = response_json(response, integration=self.integration)
                batch = body.get("issues", []) or []
                total = int(body.get("total", len(batch)))
                issues.extend(flatten_issue(issue) for issue in batch if isinstance(issue, dict))
                start_at += len(batch)
                if not batch or start_at >= total:
                    break
        issue_types = Counter(str(issue.get("issuetype") or "unknown").lower() for issue in issues)
        return FetchResult(
            tables=[table_batch(f"{config.project_key.lower()}_issues", issues)],
            stats={"issues": len(issues), "issue_types": dict(issue_types)},
            metadata={"project_key": config.project_key, "total": total, "pages": pages},
        )
