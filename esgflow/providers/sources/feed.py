from __future__ import annotations

from typing import Any
import xml.etree.ElementTree as ET

from esgflow.core.errors import TransientError
from esgflow.domain.connector_configs import RssFeedConfig
from esgflow.providers.sources.base import FetchResult, SourceContext, send, table_batch


_ATOM = "{http://www.w3.org/2005/Atom}"


def _text(element: ET.Element | None) -> str | None:
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def parse_feed(body: bytes) -> tuple[str, list[dict[str, Any]]]:
    """Parse RSS 2.0 or Atom into (format, items)."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise TransientError("Feed body is not valid XML") from exc
    items: list[dict[str, Any]] = []
    if root.tag == f"{_ATOM}feed":
        for entry in root.findall(f"{_ATOM}entry"):
            link = entry.find(f"{_ATOM}link")
            items.append(
                {
                    "id": _text(entry.find(f"{_ATOM}id")),
                    "title": _text(entry.find(f"{_ATOM}title")),
                    "link": link.get("href") if link is not None else None,
                    "summary": _text(entry.find(f"{_ATOM}summary")),
                    "published_at": _text(entry.find(f"{_ATOM}published")) or _text(entry.find(f"{_ATOM}updated")),
                    "category": ",".join(
                        term for term in (cat.get("term") for cat in entry.findall(f"{_ATOM}category")) if term
                    )
                    or None,
                }
            )
        return "atom", items
    channel = root.find("channel")
    if root.tag != "rss" or channel is None:
        raise TransientError("Feed is neither RSS 2.0 nor Atom")
    for item in channel.findall("item"):
        categories = [text for text in (_text(cat) for cat in item.findall("category")) if text]
        items.append(
            {
                "id": _text(item.find("guid")) or _text(item.find("link")),
                "title": _text(item.find("title")),
                "link": _text(item.find("link")),
                "summary": _text(item.find("description")),
                "published_at": _text(item.find("pubDate")),
                "category": ",".join(categories) or None,
            }
        )
    return "rss", items


class RssFeedAdapter:
    integration = "source.rss_feed"

    async def fetch(self, ctx: SourceContext) -> FetchResult:
        config: RssFeedConfig = ctx.config  # type: ignore[assignment]
        async with ctx.http_client_factory() as client:
            response = await send(client, "GET", config.feed_url, integration=self.integration)
        feed_format, items = parse_feed(response.content)
        return FetchResult(
            tables=[table_batch(config.table_name, items)],
            stats={"items": len(items), "format": feed_format},
            metadata={"feed_url": config.feed_url},
        )
