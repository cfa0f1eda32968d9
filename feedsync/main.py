from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import signal

import httpx
from opentelemetry import trace

from feedsync.core.config import Settings, get_settings
from feedsync.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from feedsync.jobs.executor import JobContext, execute_job
from feedsync.jobs.fetcher import FeedFetcher
from feedsync.jobs.reconcile import Reconciler
from feedsync.jobs.scheduling import SchedulePolicy, compute_next_run
from feedsync.schemas.jobs import JobResult
from feedsync.services.events import PostgresEventPublisher
from feedsync.services.rate_limit import OriginRateLimiter
from feedsync.services.repository import JobRecord, PostgresRepository, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class WorkerStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    active: int = 0


class Worker:
    """Claims due jobs and runs up to ``concurrency`` of them at once.

    Claim, execution and finish each use their own store round-trips; no
    transaction stays open while a fetch is in flight.
    """

    def __init__(
        self,
        repository: PostgresRepository,
        context: JobContext,
        *,
        concurrency: int = 5,
        poll_interval_seconds: float = 5.0,
        max_backoff_seconds: float = 60.0,
        stale_job_threshold_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.context = context
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max(poll_interval_seconds, max_backoff_seconds)
        self.stale_job_threshold_seconds = stale_job_threshold_seconds
        self.stats = WorkerStats()
        self._slots = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    def stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("worker stopping; waiting for %s in-flight job(s)", len(self._tasks))
        self._stopping.set()

    async def run(self) -> None:
        backoff = self.poll_interval_seconds
        try:
            while not self._stopping.is_set():
                try:
                    claimed = await self.run_once()
                    if not claimed:
                        await self._pause(self.poll_interval_seconds)
                    backoff = self.poll_interval_seconds
                except Exception as exc:
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                    logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                    await self._pause(sleep_for)
                    backoff = sleep_for
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_once(self) -> bool:
        """Claim one due job and start it; ``False`` when nothing is due."""
        await self._slots.acquire()
        try:
            with tracer.start_as_current_span("worker.poll_cycle"):
                job = await self.repository.claim_next_job(stale_after_seconds=self.stale_job_threshold_seconds)
        except BaseException:
            self._slots.release()
            raise
        if job is None:
            self._slots.release()
            return False

        task = asyncio.create_task(self._process(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _process(self, job: JobRecord) -> None:
        self.stats.active += 1
        try:
            with tracer.start_as_current_span("worker.process_job") as job_span:
                job_span.set_attribute("job.id", job.id)
                job_span.set_attribute("job.type", job.type)
                try:
                    result = await execute_job(job, self.context)
                except Exception as exc:
                    logger.exception("job execution failed job_id=%s type=%s", job.id, job.type)
                    result = JobResult(
                        success=False,
                        next_run_at=compute_next_run(
                            self.context.policy,
                            consecutive_failures=job.consecutive_failures + 1,
                        ).next_run_at,
                        error=str(exc) or exc.__class__.__name__,
                    )
                job_span.set_attribute("job.success", result.success)

                try:
                    await self.repository.finish_job(
                        job.id,
                        success=result.success,
                        next_run_at=result.next_run_at,
                        error=result.error,
                    )
                except Exception:
                    logger.exception("finishing job failed job_id=%s; left for stale reclaim", job.id)

            self.stats.processed += 1
            if result.success:
                self.stats.succeeded += 1
            else:
                self.stats.failed += 1
        finally:
            self.stats.active -= 1
            self._slots.release()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def build_job_context(settings: Settings, repository: PostgresRepository, client: httpx.AsyncClient) -> JobContext:
    publisher = PostgresEventPublisher(repository)
    fetcher = FeedFetcher(
        client,
        rate_limiter=OriginRateLimiter(repository, requests_per_second=settings.origin_requests_per_second),
        user_agent=settings.fetch_user_agent,
        max_redirects=settings.fetch_max_redirects,
        timeout_seconds=settings.fetch_timeout_seconds,
        max_bytes=settings.fetch_max_bytes,
    )
    return JobContext(
        repository=repository,
        fetcher=fetcher,
        reconciler=Reconciler(repository, publisher),
        policy=SchedulePolicy.from_settings(settings),
        redirect_confirmations=settings.redirect_confirmations,
    )


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()

    try:
        if settings.apply_migrations:
            applied = await repository.apply_migrations()
            if applied:
                logger.info("applied migrations: %s", ", ".join(applied))

        async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=False) as client:
            worker = Worker(
                repository,
                build_job_context(settings, repository, client),
                concurrency=settings.worker_concurrency,
                poll_interval_seconds=settings.poll_interval_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
                stale_job_threshold_seconds=settings.stale_job_threshold_seconds,
            )
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, worker.stop)
                except NotImplementedError:  # pragma: no cover - platform dependent
                    pass
            await worker.run()
            logger.info(
                "worker stopped processed=%s succeeded=%s failed=%s",
                worker.stats.processed,
                worker.stats.succeeded,
                worker.stats.failed,
            )
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
