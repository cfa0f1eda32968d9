from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
from typing import Protocol

from feedsync.core.urls import origin_key

logger = logging.getLogger(__name__)


class SlotStore(Protocol):
    async def reserve_origin_slot(self, origin: str, interval_seconds: float) -> float: ...


class OriginRateLimiter:
    """Spaces outbound requests per origin using slots reserved in the shared store.

    Every worker process reserves from the same ``origin_rate_limits`` row, so the
    limit holds across processes.
    """

    def __init__(
        self,
        store: SlotStore,
        *,
        requests_per_second: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.interval_seconds = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._sleep = sleep

    async def acquire(self, url: str) -> float:
        if self.interval_seconds <= 0:
            return 0.0
        try:
            origin = origin_key(url)
        except ValueError:
            return 0.0
        wait = await self.store.reserve_origin_slot(origin, self.interval_seconds)
        if wait > 0:
            logger.debug("rate limited origin=%s wait=%.2fs", origin, wait)
            await self._sleep(wait)
        return wait
