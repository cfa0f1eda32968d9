from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from feedsync.jobs.fetch_source import execute_fetch_source
from feedsync.jobs.fetcher import FeedFetcher
from feedsync.jobs.reconcile import Reconciler
from feedsync.jobs.redirects import REQUIRED_CONFIRMATIONS
from feedsync.jobs.scheduling import SchedulePolicy
from feedsync.schemas.jobs import FETCH_SOURCE_JOB, JobResult
from feedsync.services.repository import JobRecord, PostgresRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobContext:
    repository: PostgresRepository
    fetcher: FeedFetcher
    reconciler: Reconciler
    policy: SchedulePolicy
    redirect_confirmations: int = REQUIRED_CONFIRMATIONS


async def execute_job(job: JobRecord, context: JobContext) -> JobResult:
    if job.type == FETCH_SOURCE_JOB:
        return await execute_fetch_source(
            job,
            repository=context.repository,
            fetcher=context.fetcher,
            reconciler=context.reconciler,
            policy=context.policy,
            redirect_confirmations=context.redirect_confirmations,
        )

    logger.error("unknown job type job_id=%s type=%s", job.id, job.type)
    return JobResult(
        success=False,
        next_run_at=datetime.now(timezone.utc) + timedelta(seconds=context.policy.default_interval_seconds),
        error=f"unknown job type: {job.type}",
    )
