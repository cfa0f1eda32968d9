from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from feedsync.jobs.fetch_source import execute_fetch_source
from feedsync.jobs.fetcher import FeedFetcher
from feedsync.jobs.reconcile import ReconcileResult
from feedsync.jobs.scheduling import SchedulePolicy
from feedsync.schemas.feeds import ParsedItem
from feedsync.schemas.jobs import JobResult
from feedsync.services.repository import JobRecord, RepositoryNotFoundError, SourceRecord

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SOURCE_ID = "7d1f4a52-4c1e-4b8e-9a36-2f0f5d0e8c11"
FEED_URL = "https://feeds.example.org/rss"
RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title><link>https://example.org/</link>
<item><guid>a</guid><title>A</title><pubDate>Wed, 01 May 2024 09:00:00 GMT</pubDate></item>
<item><guid>b</guid><title>B</title><pubDate>Wed, 01 May 2024 08:00:00 GMT</pubDate></item>
<item><guid>c</guid><title>C</title><pubDate>Wed, 01 May 2024 07:00:00 GMT</pubDate></item>
</channel></rss>
"""


def _source(**overrides: Any) -> SourceRecord:
    values: dict[str, Any] = {
        "id": SOURCE_ID,
        "kind": "feed",
        "url": FEED_URL,
        "title": None,
        "description": None,
        "site_url": None,
        "etag": '"v1"',
        "last_modified": None,
        "last_fetched_at": None,
        "next_fetch_at": None,
        "consecutive_failures": 0,
        "last_error": None,
        "redirect_candidate_url": None,
        "redirect_seen_count": 0,
        "learned_interval_seconds": None,
    }
    values.update(overrides)
    return SourceRecord(**values)


def _job(payload: dict[str, Any] | None = None, *, failures: int = 0) -> JobRecord:
    return JobRecord(
        id="job-1",
        type="fetch_source",
        payload={"source_id": SOURCE_ID} if payload is None else payload,
        enabled=True,
        next_run_at=NOW,
        running_since=NOW,
        last_run_at=None,
        last_error=None,
        consecutive_failures=failures,
    )


class FakeSourceRepository:
    def __init__(self, source: SourceRecord | None) -> None:
        self.source = source
        self.successes: list[dict[str, Any]] = []
        self.failures: list[dict[str, Any]] = []
        self.redirects: list[str | None] = []

    async def get_source(self, source_id: str) -> SourceRecord:
        if self.source is None or self.source.id != source_id:
            raise RepositoryNotFoundError("source not found")
        return self.source

    async def record_fetch_success(self, source_id: str, **kwargs: Any) -> None:
        self.successes.append(kwargs)

    async def record_fetch_failure(self, source_id: str, *, error: str, next_fetch_at: datetime) -> int:
        self.failures.append({"error": error, "next_fetch_at": next_fetch_at})
        return len(self.failures)

    async def record_redirect_observation(self, source_id: str, target_url: str | None) -> int:
        self.redirects.append(target_url)
        return 1

    async def adopt_redirect(self, source_id: str, new_url: str) -> bool:
        return True


class FakeReconciler:
    def __init__(self) -> None:
        self.calls: list[list[ParsedItem]] = []

    async def reconcile(self, source_id: str, items: list[ParsedItem]) -> ReconcileResult:
        self.calls.append(list(items))
        return ReconcileResult(created=len(self.calls[-1]))


def _run(repository: FakeSourceRepository, handler, job: JobRecord | None = None) -> tuple[JobResult, FakeReconciler]:
    reconciler = FakeReconciler()

    async def run() -> JobResult:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            return await execute_fetch_source(
                job or _job(),
                repository=repository,  # type: ignore[arg-type]
                fetcher=FeedFetcher(client),
                reconciler=reconciler,  # type: ignore[arg-type]
                policy=SchedulePolicy(),
                now=NOW,
                random_value=0.0,
            )

    return asyncio.run(run()), reconciler


def test_ok_response_reconciles_items_and_learns_interval() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=RSS, headers={"ETag": '"v2"'}, request=request)

    result, reconciler = _run(repository, handler)

    assert result.success is True
    assert result.next_run_at == NOW + timedelta(hours=1)
    assert result.metadata["schedule_reason"] == "learned"
    assert len(reconciler.calls[0]) == 3
    success = repository.successes[0]
    assert success["etag"] == '"v2"'
    assert success["title"] == "Example"
    assert success["learned_interval_seconds"] == 3600


def test_not_modified_skips_reconcile_and_uses_cache_policy() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["if-none-match"] == '"v1"'
        return httpx.Response(304, headers={"Cache-Control": "max-age=1800"}, request=request)

    result, reconciler = _run(repository, handler)

    assert result.success is True
    assert result.next_run_at == NOW + timedelta(seconds=1800)
    assert reconciler.calls == []
    assert repository.successes[0]["next_fetch_at"] == result.next_run_at


def test_server_error_records_failure_with_backoff() -> None:
    repository = FakeSourceRepository(_source(consecutive_failures=2))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, request=request)

    result, _ = _run(repository, handler)

    assert result.success is False
    assert result.error == "HTTP 500: Internal Server Error"
    assert result.next_run_at == NOW + timedelta(seconds=7200)
    assert repository.failures[0]["error"] == "HTTP 500: Internal Server Error"


def test_rate_limited_honors_retry_after() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "600"}, request=request)

    result, _ = _run(repository, handler)

    assert result.success is False
    assert result.next_run_at == NOW + timedelta(seconds=600)
    assert result.metadata["schedule_reason"] == "retry_after"


def test_unparseable_body_counts_as_failure() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html><body>maintenance</body></html>", request=request)

    result, reconciler = _run(repository, handler)

    assert result.success is False
    assert (result.error or "").startswith("parse_error")
    assert reconciler.calls == []
    assert repository.successes == []


def test_permanent_redirect_is_recorded_as_candidate() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == FEED_URL:
            return httpx.Response(301, headers={"Location": "https://new.example.org/rss"}, request=request)
        return httpx.Response(304, request=request)

    result, _ = _run(repository, handler)

    assert result.success is True
    assert repository.redirects == ["https://new.example.org/rss"]


def test_malformed_payload_fails_the_job_without_fetching() -> None:
    repository = FakeSourceRepository(_source())

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result, _ = _run(repository, handler, job=_job({"unexpected": True}, failures=1))

    assert result.success is False
    assert (result.error or "").startswith("invalid payload")
    assert result.next_run_at == NOW + timedelta(seconds=3600)


def test_missing_source_and_missing_url_fail_with_long_retry() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    missing, _ = _run(FakeSourceRepository(None), handler)
    no_url, _ = _run(FakeSourceRepository(_source(url=None)), handler)

    assert missing.success is False
    assert missing.error == "source not found"
    assert missing.next_run_at == NOW + timedelta(hours=1)
    assert no_url.success is False
    assert no_url.next_run_at == NOW + timedelta(days=7)
