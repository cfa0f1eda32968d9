from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest

from feedsync.services.lifecycle import LifecycleSync
from feedsync.services.repository import JobRecord, RepositoryNotFoundError, SyncResult

SOURCE_ID = "5a0c2e7b-8f1d-4c3a-b9e6-1d2f3a4b5c6d"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeLifecycleRepository:
    def __init__(self, *, known_sources: set[str] | None = None) -> None:
        self.known_sources = known_sources if known_sources is not None else {SOURCE_ID}
        self.jobs: dict[str, JobRecord] = {}
        self.subscriptions: dict[tuple[str, str], bool] = {}
        self.calls: list[str] = []
        self.fail_inside = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[str]:
        self.calls.append("begin")
        snapshot = (dict(self.subscriptions), {key: _copy(job) for key, job in self.jobs.items()})
        try:
            yield "conn"
        except BaseException:
            self.subscriptions, self.jobs = snapshot
            self.calls.append("rollback")
            raise
        self.calls.append("commit")

    async def ensure_fetch_job(
        self,
        source_id: str,
        *,
        next_run_at: datetime | None = None,
        enable: bool = True,
        conn: Any = None,
    ) -> JobRecord:
        self.calls.append(f"ensure:{enable}")
        if source_id not in self.known_sources:
            raise RepositoryNotFoundError("source not found")
        job = self.jobs.get(source_id)
        if job is None:
            job = JobRecord(
                id=f"job-{source_id[:4]}",
                type="fetch_source",
                payload={"source_id": source_id},
                enabled=enable,
                next_run_at=next_run_at or NOW,
                running_since=None,
                last_run_at=None,
                last_error=None,
                consecutive_failures=0,
            )
            self.jobs[source_id] = job
        else:
            job.enabled = job.enabled or enable
        return job

    async def lock_fetch_job(self, conn: Any, source_id: str) -> str | None:
        self.calls.append("lock")
        job = self.jobs.get(source_id)
        return job.id if job else None

    async def set_subscription_active(self, conn: Any, *, user_id: str, source_id: str, active: bool) -> None:
        self.calls.append(f"subscription:{active}")
        self.subscriptions[(user_id, source_id)] = active
        if self.fail_inside:
            raise RuntimeError("boom")

    async def sync_fetch_job_enabled(self, source_id: str, *, conn: Any = None) -> SyncResult | None:
        self.calls.append("sync")
        job = self.jobs.get(source_id)
        if job is None:
            return None
        previous = job.enabled
        job.enabled = any(
            active for (_, subscribed_source), active in self.subscriptions.items() if subscribed_source == source_id
        )
        return SyncResult(enabled=job.enabled, previous_enabled=previous, next_run_at=job.next_run_at)

    async def get_fetch_job(self, source_id: str) -> JobRecord | None:
        return self.jobs.get(source_id)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.events.append((topic, payload))


def _copy(job: JobRecord) -> JobRecord:
    return JobRecord(
        id=job.id,
        type=job.type,
        payload=dict(job.payload),
        enabled=job.enabled,
        next_run_at=job.next_run_at,
        running_since=job.running_since,
        last_run_at=job.last_run_at,
        last_error=job.last_error,
        consecutive_failures=job.consecutive_failures,
    )


def _sync() -> tuple[LifecycleSync, FakeLifecycleRepository, RecordingPublisher]:
    repository = FakeLifecycleRepository()
    publisher = RecordingPublisher()
    return LifecycleSync(repository, publisher), repository, publisher  # type: ignore[arg-type]


def test_first_subscriber_enables_and_last_unsubscribe_disables() -> None:
    lifecycle, repository, publisher = _sync()

    async def run() -> list[bool]:
        return [
            await lifecycle.subscribe("user-1", SOURCE_ID),
            await lifecycle.subscribe("user-2", SOURCE_ID),
            await lifecycle.unsubscribe("user-1", SOURCE_ID),
            await lifecycle.unsubscribe("user-2", SOURCE_ID),
        ]

    assert asyncio.run(run()) == [True, True, True, False]
    assert [topic for topic, _ in publisher.events] == ["source.enabled", "source.disabled"]
    assert publisher.events[0][1]["source_id"] == SOURCE_ID
    assert repository.jobs[SOURCE_ID].enabled is False


def test_subscription_change_locks_before_mutation_and_syncs_before_commit() -> None:
    lifecycle, repository, _ = _sync()

    asyncio.run(lifecycle.subscribe("user-1", SOURCE_ID))

    assert repository.calls == ["begin", "ensure:False", "lock", "subscription:True", "sync", "commit"]


def test_failed_subscription_change_rolls_back_without_events() -> None:
    lifecycle, repository, publisher = _sync()
    repository.fail_inside = True

    with pytest.raises(RuntimeError):
        asyncio.run(lifecycle.subscribe("user-1", SOURCE_ID))

    assert "rollback" in repository.calls
    assert "sync" not in repository.calls
    assert repository.subscriptions == {}
    assert publisher.events == []


def test_sync_without_job_reports_disabled() -> None:
    lifecycle, _, publisher = _sync()

    assert asyncio.run(lifecycle.sync_enabled(SOURCE_ID)) is False
    assert publisher.events == []


def test_standalone_sync_announces_changes() -> None:
    lifecycle, repository, publisher = _sync()

    async def run() -> bool:
        await lifecycle.ensure_fetch_job(SOURCE_ID)
        return await lifecycle.sync_enabled(SOURCE_ID)

    assert asyncio.run(run()) is False
    assert repository.jobs[SOURCE_ID].enabled is False
    assert [topic for topic, _ in publisher.events] == ["source.disabled"]


def test_subscribing_to_unknown_source_raises_not_found() -> None:
    lifecycle, _, publisher = _sync()

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(lifecycle.subscribe("user-1", "4b1f0000-0000-4000-8000-000000000000"))
    assert publisher.events == []
