from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
import hashlib
import logging

import asyncpg  # type: ignore[import-untyped]
from opentelemetry import trace

from feedsync.core.urls import normalize_url
from feedsync.schemas.feeds import ParsedItem
from feedsync.services.events import ITEM_CREATED, ITEM_UPDATED, EventPublisher, NullEventPublisher
from feedsync.services.repository import (
    ItemRecord,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
INSERT_ATTEMPTS = 2


@dataclass(slots=True)
class ReconcileResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    created_item_ids: list[str] = field(default_factory=list)
    updated_item_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def derive_item_key(item: ParsedItem) -> str | None:
    """Identity of an item within its source.

    The external identifier wins; otherwise the canonical link, then the title.
    Fallback keys can under-deduplicate sources that rewrite links or titles.
    """
    guid = _as_text(item.guid)
    if guid:
        return f"guid:{guid}"
    link = _as_text(item.link)
    if link:
        try:
            return f"link:{normalize_url(link)}"
        except ValueError:
            return f"link:{link}"
    title = _as_text(item.title)
    if title:
        return f"title:{title}"
    return None


def content_fingerprint(item: ParsedItem) -> str:
    body = item.content or item.summary or ""
    return hashlib.sha256(f"{item.title or ''}\n{body}".encode("utf-8")).hexdigest()


def classify(existing: ItemRecord | None, fingerprint: str) -> str:
    if existing is None:
        return CREATED
    if existing.content_hash == fingerprint:
        return UNCHANGED
    return UPDATED


class Reconciler:
    def __init__(self, repository: PostgresRepository, publisher: EventPublisher | None = None) -> None:
        self.repository = repository
        self.publisher = publisher or NullEventPublisher()

    async def reconcile(self, source_id: str, items: Iterable[ParsedItem]) -> ReconcileResult:
        result = ReconcileResult()
        seen_keys: set[str] = set()

        with tracer.start_as_current_span("reconcile.source") as span:
            span.set_attribute("source.id", source_id)
            for item in items:
                key = derive_item_key(item)
                if key is None or key in seen_keys:
                    result.skipped += 1
                    continue
                seen_keys.add(key)

                try:
                    outcome, record = await self._reconcile_item(source_id, key, item)
                except (RepositoryError, asyncpg.PostgresError) as exc:
                    result.failed += 1
                    logger.warning("item reconcile failed source_id=%s key=%s error=%s", source_id, key, exc)
                    continue

                if outcome == CREATED:
                    result.created += 1
                    result.created_item_ids.append(record.id)
                    await self._announce(ITEM_CREATED, record)
                elif outcome == UPDATED:
                    result.updated += 1
                    result.updated_item_ids.append(record.id)
                    await self._announce(ITEM_UPDATED, record)
                else:
                    result.unchanged += 1

            for name, value in result.as_dict().items():
                span.set_attribute(f"reconcile.{name}", value)

        if result.skipped:
            logger.info("items without usable identity skipped source_id=%s count=%s", source_id, result.skipped)
        return result

    async def _reconcile_item(self, source_id: str, key: str, item: ParsedItem) -> tuple[str, ItemRecord]:
        fingerprint = content_fingerprint(item)
        for _ in range(INSERT_ATTEMPTS):
            async with self.repository.transaction() as conn:
                existing = await self.repository.lock_item(conn, source_id, key)
                outcome = classify(existing, fingerprint)
                if outcome == UNCHANGED:
                    return outcome, existing
                if outcome == UPDATED:
                    updated = await self.repository.replace_item_content(
                        conn,
                        existing=existing,
                        item=item,
                        content_hash=fingerprint,
                    )
                    return outcome, updated

                created = await self.repository.insert_item(
                    conn,
                    source_id=source_id,
                    dedupe_key=key,
                    item=item,
                    content_hash=fingerprint,
                )
                if created is not None:
                    await self.repository.seed_subscriber_states(conn, item_id=created.id, source_id=source_id)
                    return outcome, created
            # another writer inserted the same key; retry against its row
        raise RepositoryConflictError(f"could not reconcile item key={key}")

    async def _announce(self, topic: str, record: ItemRecord) -> None:
        await self.publisher.publish(
            topic,
            {"source_id": record.source_id, "item_id": record.id, "version": record.version},
        )


def _as_text(value: str | None) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
