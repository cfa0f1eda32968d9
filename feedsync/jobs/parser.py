from __future__ import annotations

from datetime import datetime, timezone
import io
import json
import logging
import time
from typing import Any
from urllib.parse import urljoin

import feedparser

from feedsync.schemas.feeds import ParsedFeed, ParsedItem, SyndicationHints

logger = logging.getLogger(__name__)

UPDATE_PERIODS = {"hourly", "daily", "weekly", "monthly", "yearly"}
JSON_FEED_VERSION_PREFIX = "https://jsonfeed.org/version/"


class FeedParseError(ValueError):
    """Raised when a response body is not a recognizable feed."""


def parse_feed(body: bytes | str, *, base_url: str | None = None, content_type: str | None = None) -> ParsedFeed:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    if _looks_like_json(raw, content_type):
        return parse_json_feed(raw, base_url=base_url)

    response_headers = {"content-location": base_url} if base_url else None
    parsed = feedparser.parse(io.BytesIO(raw), response_headers=response_headers)

    if not parsed.get("version") and not parsed.entries:
        reason = parsed.get("bozo_exception") if parsed.get("bozo") else None
        raise FeedParseError(f"not a feed: {reason}" if reason else "not a feed")
    if parsed.get("bozo"):
        logger.debug("feed parsed with recoverable errors base_url=%s error=%s", base_url, parsed.get("bozo_exception"))

    feed = parsed.feed
    return ParsedFeed(
        title=_as_text(feed.get("title")),
        description=_as_text(feed.get("subtitle")) or _as_text(feed.get("description")),
        site_url=_as_text(feed.get("link")),
        ttl_minutes=_positive_int(feed.get("ttl")),
        syndication=_syndication_hints(feed),
        items=[_parse_entry(entry) for entry in parsed.entries],
    )


def parse_json_feed(raw: bytes, *, base_url: str | None = None) -> ParsedFeed:
    """JSON Feed 1.0/1.1 documents; feedparser only handles the XML formats."""
    try:
        document = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FeedParseError(f"invalid json feed: {exc}") from exc
    if not isinstance(document, dict):
        raise FeedParseError("invalid json feed: root must be an object")
    version = document.get("version")
    if not isinstance(version, str) or not version.startswith(JSON_FEED_VERSION_PREFIX):
        raise FeedParseError("invalid json feed: missing or unsupported version")

    raw_items = document.get("items")
    items = [
        _parse_json_item(item, base_url=base_url)
        for item in (raw_items if isinstance(raw_items, list) else [])
        if isinstance(item, dict)
    ]
    return ParsedFeed(
        title=_as_text(document.get("title")),
        description=_as_text(document.get("description")),
        site_url=_as_text(document.get("home_page_url")),
        items=items,
    )


def _parse_json_item(item: dict[str, Any], *, base_url: str | None) -> ParsedItem:
    link = _as_text(item.get("url")) or _as_text(item.get("external_url"))
    if link and base_url:
        link = urljoin(base_url, link)
    content_text = _as_text(item.get("content_text"))
    return ParsedItem(
        guid=_json_id(item.get("id")),
        link=link,
        title=_as_text(item.get("title")),
        author=_json_author(item),
        content=_as_text(item.get("content_html")) or content_text,
        summary=_as_text(item.get("summary")) or content_text,
        published_at=_parse_iso_datetime(item.get("date_published")) or _parse_iso_datetime(item.get("date_modified")),
    )


def _json_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return _as_text(value)


def _json_author(item: dict[str, Any]) -> str | None:
    authors = item.get("authors")
    if isinstance(authors, list) and authors and isinstance(authors[0], dict):
        return _as_text(authors[0].get("name"))
    author = item.get("author")
    if isinstance(author, dict):
        return _as_text(author.get("name"))
    return None


def _looks_like_json(raw: bytes, content_type: str | None) -> bool:
    if content_type and "json" in content_type.lower():
        return True
    return raw.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"{")


def _parse_entry(entry: Any) -> ParsedItem:
    content = None
    content_blocks = entry.get("content") or []
    if content_blocks:
        content = _as_text(content_blocks[0].get("value"))
    return ParsedItem(
        guid=_as_text(entry.get("id")),
        link=_as_text(entry.get("link")),
        title=_as_text(entry.get("title")),
        author=_as_text(entry.get("author")),
        content=content,
        summary=_as_text(entry.get("summary")),
        published_at=_as_datetime(entry.get("published_parsed") or entry.get("updated_parsed")),
    )


def _syndication_hints(feed: Any) -> SyndicationHints | None:
    period = _as_text(feed.get("sy_updateperiod"))
    if period is None or period.lower() not in UPDATE_PERIODS:
        return None
    return SyndicationHints(
        update_period=period.lower(),
        update_frequency=_positive_int(feed.get("sy_updatefrequency")),
    )


def _as_datetime(value: Any) -> datetime | None:
    if not isinstance(value, time.struct_time):
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def _parse_iso_datetime(value: Any) -> datetime | None:
    text = _as_text(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _positive_int(value: Any) -> int | None:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None
