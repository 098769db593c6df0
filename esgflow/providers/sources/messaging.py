from __future__ import annotations

import logging
from typing import Any

from esgflow.core.errors import ConfigurationError, TransientError
from esgflow.domain.connector_configs import SlackConfig, TeamsConfig
from esgflow.providers.sources.base import FetchResult, SourceContext, response_json, send, table_batch


logger = logging.getLogger(__name__)

_SLACK_CONFIG_ERRORS = {
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "token_revoked",
    "missing_scope",
    "channel_not_found",
    "not_in_channel",
}


def _rate_limited(exc: TransientError) -> bool:
    return exc.status_code == 429


class SlackAdapter:
    """Channel history via conversations.history.

    A rate limit on a later page ends the run with the pages already
    collected instead of failing it.
    """

    integration = "source.slack"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: SlackConfig = ctx.config  # type: ignore[assignment]
        headers = {"Authorization": f"Bearer {ctx.secrets.get('token')}"}
        messages: list[dict[str, Any]] = []
        cursor: str | None = None
        pages = 0
        partial = False
        async with ctx.http_client_factory() as client:
            while pages < ctx.settings.connector_max_pages:
                params: dict[str, Any] = {"channel": config.channel_id, "limit": config.page_limit}
                if cursor:
                    params["cursor"] = cursor
                try:
                    response = await send(
                        client,
                        "GET",
                        f"{config.api_url}/conversations.history",
                        integration=self.integration,
                        headers=headers,
                        params=params,
                    )
                    body = response_json(response, integration=self.integration)
                    if not body.get("ok", False):
                        error = str(body.get("error") or "unknown_error")
                        if error in _SLACK_CONFIG_ERRORS:
                            raise ConfigurationError(f"Slack rejected the request: {error}")
                        if error == "ratelimited":
                            raise TransientError("Slack rate limited", status_code=429)
                        raise TransientError(f"Slack API error: {error}")
                except TransientError as exc:
                    if pages > 0 and _rate_limited(exc):
                        logger.warning("slack_rate_limited_partial channel=%s pages=%s", config.channel_id, pages)
                        partial = True
                        break
                    raise
                pages += 1
                for message in body.get("messages", []) or []:
                    messages.append(
                        {
                            "ts": message.get("ts"),
                            "user": message.get("user"),
                            "type": message.get("type"),
                            "subtype": message.get("subtype"),
                            "text": message.get("text"),
                            "thread_ts": message.get("thread_ts"),
                            "reply_count": int(message.get("reply_count") or 0),
                            "reaction_count": sum(int(r.get("count") or 0) for r in message.get("reactions", []) or []),
                        }
                    )
                cursor = (body.get("response_metadata") or {}).get("next_cursor") or None
                if not body.get("has_more") or not cursor:
                    break
        return FetchResult(
            tables=[table_batch("slack_messages", messages)],
            stats={"message_count": len(messages)},
            metadata={"channel_id": config.channel_id, "pages": pages, "partial": partial},
        )


class TeamsAdapter:
    integration = "source.teams"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: TeamsConfig = ctx.config  # type: ignore[assignment]
        headers = {"Authorization": f"Bearer {ctx.secrets.get('token')}"}
        url: str | None = f"{config.graph_url}/teams/{config.team_id}/channels/{config.channel_id}/messages"
        messages: list[dict[str, Any]] = []
        pages = 0
        partial = False
        async with ctx.http_client_factory() as client:
            while url and pages < ctx.settings.connector_max_pages:
                try:
                    response = await send(client, "GET", url, integration=self.integration, headers=headers)
                except TransientError as exc:
                    if pages > 0 and _rate_limited(exc):
                        logger.warning("teams_rate_limited_partial team=%s pages=%s", config.team_id, pages)
                        partial = True
                        break
                    raise
                pages += 1
                body = response_json(response, integration=self.integration)
                for message in body.get("value", []) or []:
                    sender = ((message.get("from") or {}).get("user") or {})
                    content = message.get("body") or {}
                    messages.append(
                        {
                            "id": message.get("id"),
                            "created_at": message.get("createdDateTime"),
                            "modified_at": message.get("lastModifiedDateTime"),
                            "message_type": message.get("messageType"),
                            "importance": message.get("importance"),
                            "sender": sender.get("displayName"),
                            "content_type": content.get("contentType"),
                            "body": content.get("content"),
                        }
                    )
                url = body.get("@odata.nextLink")
        return FetchResult(
            tables=[table_batch("teams_messages", messages)],
            stats={"message_count": len(messages)},
            metadata={"team_id": config.team_id, "channel_id": config.channel_id, "pages": pages, "partial": partial},
        )
