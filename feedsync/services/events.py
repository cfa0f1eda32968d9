from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from feedsync.services.repository import PostgresRepository

logger = logging.getLogger(__name__)

ITEM_CREATED = "item.created"
ITEM_UPDATED = "item.updated"
ITEM_STATE_CHANGED = "item.state_changed"
SOURCE_ENABLED = "source.enabled"
SOURCE_DISABLED = "source.disabled"


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class NullEventPublisher:
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        return None


class PostgresEventPublisher:
    """Publishes over ``pg_notify``; delivery is best effort and never raises."""

    def __init__(self, repository: PostgresRepository, *, channel_prefix: str = "feedsync") -> None:
        self.repository = repository
        self.channel_prefix = channel_prefix

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        channel = f"{self.channel_prefix}.{topic}" if self.channel_prefix else topic
        try:
            await self.repository.notify(channel, json.dumps(payload, default=str, sort_keys=True))
        except Exception as exc:
            logger.warning("event publish failed topic=%s error=%s", topic, exc)
