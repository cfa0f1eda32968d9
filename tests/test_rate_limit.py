from __future__ import annotations

import asyncio

from feedsync.services.rate_limit import OriginRateLimiter


class FakeSlotStore:
    def __init__(self, waits: list[float]) -> None:
        self.waits = list(waits)
        self.reservations: list[tuple[str, float]] = []

    async def reserve_origin_slot(self, origin: str, interval_seconds: float) -> float:
        self.reservations.append((origin, interval_seconds))
        return self.waits.pop(0) if self.waits else 0.0


def test_acquire_reserves_per_origin_and_sleeps_for_the_wait() -> None:
    store = FakeSlotStore([0.0, 1.5])
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    limiter = OriginRateLimiter(store, requests_per_second=2.0, sleep=fake_sleep)

    async def run() -> list[float]:
        return [
            await limiter.acquire("https://Feeds.Example.org/a.xml"),
            await limiter.acquire("https://feeds.example.org:443/b.xml"),
        ]

    assert asyncio.run(run()) == [0.0, 1.5]
    assert store.reservations == [("https://feeds.example.org", 0.5), ("https://feeds.example.org", 0.5)]
    assert slept == [1.5]


def test_disabled_limiter_and_unparseable_urls_skip_the_store() -> None:
    store = FakeSlotStore([5.0])

    assert asyncio.run(OriginRateLimiter(store, requests_per_second=0).acquire("https://example.org")) == 0.0
    assert asyncio.run(OriginRateLimiter(store).acquire("mailto:someone@example.org")) == 0.0
    assert store.reservations == []
