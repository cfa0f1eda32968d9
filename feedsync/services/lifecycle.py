from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

import asyncpg  # type: ignore[import-untyped]

from feedsync.services.events import SOURCE_DISABLED, SOURCE_ENABLED, EventPublisher, NullEventPublisher
from feedsync.services.repository import JobRecord, PostgresRepository, SyncResult

logger = logging.getLogger(__name__)


class LifecycleSync:
    """Keeps each source's fetch job enabled exactly while it has active subscribers."""

    def __init__(self, repository: PostgresRepository, publisher: EventPublisher | None = None) -> None:
        self.repository = repository
        self.publisher = publisher or NullEventPublisher()

    async def sync_enabled(self, source_id: str, *, conn: asyncpg.Connection | None = None) -> bool:
        result = await self.repository.sync_fetch_job_enabled(source_id, conn=conn)
        if result is None:
            logger.info("no fetch job to sync source_id=%s", source_id)
            return False
        if conn is None:
            await self._announce(source_id, result)
        return result.enabled

    async def ensure_fetch_job(self, source_id: str) -> JobRecord:
        job = await self.repository.ensure_fetch_job(source_id)
        logger.info("fetch job ensured job_id=%s source_id=%s", job.id, source_id)
        return job

    @asynccontextmanager
    async def subscription_change(self, source_id: str) -> AsyncIterator[asyncpg.Connection]:
        """Transaction for mutating a source's subscriptions.

        The fetch job row is locked before the caller touches subscriptions and
        re-synced before commit, so concurrent subscribe and unsubscribe calls for
        one source serialize and the job never disagrees with committed
        subscriptions.
        """
        result: SyncResult | None = None
        async with self.repository.transaction() as conn:
            await self.repository.ensure_fetch_job(source_id, conn=conn, enable=False)
            await self.repository.lock_fetch_job(conn, source_id)
            yield conn
            result = await self.repository.sync_fetch_job_enabled(source_id, conn=conn)
        if result is not None:
            await self._announce(source_id, result)

    async def subscribe(self, user_id: str, source_id: str) -> bool:
        async with self.subscription_change(source_id) as conn:
            await self.repository.set_subscription_active(conn, user_id=user_id, source_id=source_id, active=True)
        return await self._current_enabled(source_id)

    async def unsubscribe(self, user_id: str, source_id: str) -> bool:
        async with self.subscription_change(source_id) as conn:
            await self.repository.set_subscription_active(conn, user_id=user_id, source_id=source_id, active=False)
        return await self._current_enabled(source_id)

    async def _current_enabled(self, source_id: str) -> bool:
        job = await self.repository.get_fetch_job(source_id)
        return bool(job and job.enabled)

    async def _announce(self, source_id: str, result: SyncResult) -> None:
        if not result.changed:
            return
        topic = SOURCE_ENABLED if result.enabled else SOURCE_DISABLED
        logger.info("fetch job %s source_id=%s", "enabled" if result.enabled else "disabled", source_id)
        await self.publisher.publish(topic, {"source_id": source_id, "next_run_at": result.next_run_at})
