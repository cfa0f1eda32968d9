from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from pydantic import ValidationError

from feedsync.jobs.fetcher import NOT_MODIFIED, OK, FeedFetcher, FetchOutcome
from feedsync.jobs.parser import FeedParseError, parse_feed
from feedsync.jobs.reconcile import Reconciler
from feedsync.jobs.redirects import REQUIRED_CONFIRMATIONS, confirm_permanent_redirect
from feedsync.jobs.scheduling import SchedulePolicy, compute_next_run, learn_interval
from feedsync.schemas.jobs import FetchSourcePayload, JobResult
from feedsync.services.repository import JobRecord, PostgresRepository, RepositoryNotFoundError, SourceRecord

logger = logging.getLogger(__name__)

MISSING_SOURCE_RETRY = timedelta(hours=1)
MISSING_URL_RETRY = timedelta(days=7)


async def execute_fetch_source(
    job: JobRecord,
    *,
    repository: PostgresRepository,
    fetcher: FeedFetcher,
    reconciler: Reconciler,
    policy: SchedulePolicy,
    redirect_confirmations: int = REQUIRED_CONFIRMATIONS,
    now: datetime | None = None,
    random_value: float | None = None,
) -> JobResult:
    """One fetch cycle for a source: fetch, reconcile, reschedule.

    Source health (validators, failure count, last error) is written here; the
    returned result is what the worker records on the job itself.
    """
    current = now or datetime.now(timezone.utc)

    try:
        payload = FetchSourcePayload.model_validate(job.payload)
    except ValidationError as exc:
        logger.error("malformed fetch_source payload job_id=%s payload=%s errors=%s", job.id, job.payload, exc.errors())
        return JobResult(
            success=False,
            next_run_at=compute_next_run(
                policy,
                now=current,
                consecutive_failures=job.consecutive_failures + 1,
                random_value=random_value,
            ).next_run_at,
            error=f"invalid payload: {exc.error_count()} error(s)",
        )

    try:
        source = await repository.get_source(payload.source_id)
    except RepositoryNotFoundError:
        logger.error("fetch_source job for missing source job_id=%s source_id=%s", job.id, payload.source_id)
        return JobResult(success=False, next_run_at=current + MISSING_SOURCE_RETRY, error="source not found")

    if not source.url:
        logger.error("source has no url job_id=%s source_id=%s", job.id, source.id)
        return JobResult(success=False, next_run_at=current + MISSING_URL_RETRY, error="source has no url")

    outcome = await fetcher.fetch(source.url, etag=source.etag, last_modified=source.last_modified, now=current)
    adopted_url = await confirm_permanent_redirect(
        repository,
        source_id=source.id,
        source_url=source.url,
        candidate_url=source.redirect_candidate_url,
        outcome=outcome,
        confirmations=redirect_confirmations,
    )
    metadata: dict[str, object] = {
        "fetch_status": outcome.status,
        "status_code": outcome.status_code,
        "redirect_hops": len(outcome.redirect_chain),
    }
    if adopted_url:
        metadata["adopted_url"] = adopted_url

    if outcome.status == OK:
        return await _handle_content(
            source,
            outcome,
            repository=repository,
            reconciler=reconciler,
            policy=policy,
            now=current,
            random_value=random_value,
            metadata=metadata,
        )

    if outcome.status == NOT_MODIFIED:
        next_run = compute_next_run(
            policy,
            now=current,
            cache_control=outcome.cache_control,
            learned_interval_seconds=source.learned_interval_seconds,
            random_value=random_value,
        )
        await repository.record_fetch_success(
            source.id,
            etag=outcome.etag,
            last_modified=outcome.last_modified,
            next_fetch_at=next_run.next_run_at,
        )
        metadata["schedule_reason"] = next_run.reason
        return JobResult(success=True, next_run_at=next_run.next_run_at, metadata=metadata)

    return await _record_failure(
        source,
        error=outcome.error or outcome.status,
        retry_after_seconds=outcome.retry_after_seconds,
        repository=repository,
        policy=policy,
        now=current,
        random_value=random_value,
        metadata={**metadata, "permanent": outcome.permanent},
    )


async def _handle_content(
    source: SourceRecord,
    outcome: FetchOutcome,
    *,
    repository: PostgresRepository,
    reconciler: Reconciler,
    policy: SchedulePolicy,
    now: datetime,
    random_value: float | None,
    metadata: dict[str, object],
) -> JobResult:
    try:
        feed = parse_feed(outcome.body or b"", base_url=outcome.final_url, content_type=outcome.content_type)
    except FeedParseError as exc:
        return await _record_failure(
            source,
            error=f"parse_error: {exc}",
            retry_after_seconds=None,
            repository=repository,
            policy=policy,
            now=now,
            random_value=random_value,
            metadata=metadata,
        )

    result = await reconciler.reconcile(source.id, feed.items)
    learned = learn_interval(item.published_at for item in feed.items) or source.learned_interval_seconds
    next_run = compute_next_run(
        policy,
        now=now,
        cache_control=outcome.cache_control,
        ttl_minutes=feed.ttl_minutes,
        syndication=feed.syndication,
        learned_interval_seconds=learned,
        random_value=random_value,
    )
    await repository.record_fetch_success(
        source.id,
        etag=outcome.etag,
        last_modified=outcome.last_modified,
        next_fetch_at=next_run.next_run_at,
        title=feed.title,
        description=feed.description,
        site_url=feed.site_url,
        learned_interval_seconds=learned,
    )
    logger.info(
        "source fetched source_id=%s created=%s updated=%s unchanged=%s next_run_at=%s reason=%s",
        source.id,
        result.created,
        result.updated,
        result.unchanged,
        next_run.next_run_at.isoformat(),
        next_run.reason,
    )
    metadata.update(result.as_dict())
    metadata["schedule_reason"] = next_run.reason
    return JobResult(success=True, next_run_at=next_run.next_run_at, metadata=metadata)


async def _record_failure(
    source: SourceRecord,
    *,
    error: str,
    retry_after_seconds: int | None,
    repository: PostgresRepository,
    policy: SchedulePolicy,
    now: datetime,
    random_value: float | None,
    metadata: dict[str, object],
) -> JobResult:
    failures = source.consecutive_failures + 1
    next_run = compute_next_run(
        policy,
        now=now,
        consecutive_failures=failures,
        retry_after_seconds=retry_after_seconds,
        random_value=random_value,
    )
    await repository.record_fetch_failure(source.id, error=error, next_fetch_at=next_run.next_run_at)
    logger.warning(
        "source fetch failed source_id=%s failures=%s error=%s next_run_at=%s",
        source.id,
        failures,
        error,
        next_run.next_run_at.isoformat(),
    )
    metadata["schedule_reason"] = next_run.reason
    metadata["consecutive_failures"] = failures
    return JobResult(success=False, next_run_at=next_run.next_run_at, error=error, metadata=metadata)
