from __future__ import annotations

import logging
from typing import Protocol

from feedsync.jobs.fetcher import FetchOutcome

logger = logging.getLogger(__name__)

REQUIRED_CONFIRMATIONS = 3


class RedirectStore(Protocol):
    async def record_redirect_observation(self, source_id: str, target_url: str | None) -> int: ...

    async def adopt_redirect(self, source_id: str, new_url: str) -> bool: ...


async def confirm_permanent_redirect(
    store: RedirectStore,
    *,
    source_id: str,
    source_url: str | None,
    candidate_url: str | None,
    outcome: FetchOutcome,
    confirmations: int = REQUIRED_CONFIRMATIONS,
) -> str | None:
    """Record this cycle's permanent redirect and adopt it once seen often enough.

    The target has to be reported identically on ``confirmations`` consecutive
    fetches. A cycle that gets a response without a permanent redirect breaks
    the streak. Returns the adopted URL, if any.
    """
    target = outcome.permanent_redirect_url
    if target is None or target == source_url:
        if candidate_url is not None and outcome.responded:
            await store.record_redirect_observation(source_id, None)
            logger.info("redirect streak reset source_id=%s candidate=%s", source_id, candidate_url)
        return None

    seen = await store.record_redirect_observation(source_id, target)
    logger.info("permanent redirect observed source_id=%s target=%s seen=%s", source_id, target, seen)
    if seen < max(1, confirmations):
        return None

    if not await store.adopt_redirect(source_id, target):
        return None
    logger.info("redirect adopted source_id=%s from=%s to=%s", source_id, source_url, target)
    return target
