from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import random
import statistics

from feedsync.core.config import Settings
from feedsync.jobs.cache_headers import CacheControl, effective_max_age
from feedsync.schemas.feeds import SyndicationHints

PERIOD_SECONDS = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
    "yearly": 365 * 24 * 60 * 60,
}
MIN_LEARNING_SAMPLES = 3


@dataclass(slots=True, frozen=True)
class SchedulePolicy:
    min_interval_seconds: int = 60
    default_interval_seconds: int = 3600
    max_interval_seconds: int = 7 * 24 * 60 * 60
    failure_base_backoff_seconds: int = 30 * 60
    max_consecutive_failures: int = 10
    jitter_fraction: float = 0.1
    max_jitter_seconds: int = 30 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulePolicy:
        return cls(
            min_interval_seconds=settings.min_fetch_interval_seconds,
            default_interval_seconds=settings.default_fetch_interval_seconds,
            max_interval_seconds=settings.max_fetch_interval_seconds,
            failure_base_backoff_seconds=settings.failure_base_backoff_seconds,
            max_consecutive_failures=settings.max_consecutive_failures,
            jitter_fraction=settings.jitter_fraction,
            max_jitter_seconds=settings.max_jitter_seconds,
        )


@dataclass(slots=True)
class NextRun:
    next_run_at: datetime
    interval_seconds: int
    reason: str


def compute_next_run(
    policy: SchedulePolicy,
    *,
    now: datetime | None = None,
    cache_control: CacheControl | None = None,
    ttl_minutes: int | None = None,
    syndication: SyndicationHints | None = None,
    learned_interval_seconds: int | None = None,
    consecutive_failures: int = 0,
    retry_after_seconds: int | None = None,
    random_value: float | None = None,
) -> NextRun:
    """Pick the next run time for a source.

    Failures win over every hint: an explicit ``Retry-After`` if the server sent
    one, else exponential backoff. Healthy sources use, in order, the response
    Cache-Control lifetime, the feed ``<ttl>``, syndication hints, the learned
    publishing interval and the default. Jitter is added before clamping so the
    floor and ceiling always hold.
    """
    current = now or datetime.now(timezone.utc)

    if consecutive_failures > 0:
        if retry_after_seconds is not None:
            interval, reason = retry_after_seconds, "retry_after"
        else:
            interval, reason = failure_backoff_seconds(policy, consecutive_failures), "failure_backoff"
    else:
        interval, reason = _hinted_interval(
            policy,
            cache_control=cache_control,
            ttl_minutes=ttl_minutes,
            syndication=syndication,
            learned_interval_seconds=learned_interval_seconds,
        )

    total = interval + jitter_seconds(policy, interval, random.random() if random_value is None else random_value)
    if total < policy.min_interval_seconds:
        total, reason = policy.min_interval_seconds, f"{reason}_clamped_min"
    elif total > policy.max_interval_seconds:
        total, reason = policy.max_interval_seconds, f"{reason}_clamped_max"

    return NextRun(next_run_at=current + timedelta(seconds=total), interval_seconds=total, reason=reason)


def failure_backoff_seconds(policy: SchedulePolicy, consecutive_failures: int) -> int:
    failures = min(max(1, consecutive_failures), policy.max_consecutive_failures)
    if failures >= policy.max_consecutive_failures:
        return policy.max_interval_seconds
    return min(policy.failure_base_backoff_seconds * 2 ** (failures - 1), policy.max_interval_seconds)


def jitter_seconds(policy: SchedulePolicy, interval_seconds: int, random_value: float) -> int:
    ceiling = min(interval_seconds * policy.jitter_fraction, policy.max_jitter_seconds)
    return int(max(0.0, ceiling) * min(1.0, max(0.0, random_value)))


def syndication_to_seconds(hints: SyndicationHints | None) -> int | None:
    if hints is None or hints.update_period is None:
        return None
    frequency = hints.update_frequency if hints.update_frequency is not None else 1
    if frequency <= 0:
        return None
    return PERIOD_SECONDS[hints.update_period] // frequency


def learn_interval(published: Iterable[datetime | None]) -> int | None:
    """Median gap between distinct publication times, or ``None`` without enough data."""
    moments = sorted({_as_utc(value) for value in published if value is not None})
    if len(moments) < MIN_LEARNING_SAMPLES:
        return None
    gaps = [(later - earlier).total_seconds() for earlier, later in zip(moments, moments[1:])]
    return int(statistics.median(gaps))


def _hinted_interval(
    policy: SchedulePolicy,
    *,
    cache_control: CacheControl | None,
    ttl_minutes: int | None,
    syndication: SyndicationHints | None,
    learned_interval_seconds: int | None,
) -> tuple[int, str]:
    max_age = effective_max_age(cache_control)
    if max_age is not None:
        return max_age, "cache_control"
    if ttl_minutes is not None and ttl_minutes > 0:
        return ttl_minutes * 60, "ttl"
    syndication_seconds = syndication_to_seconds(syndication)
    if syndication_seconds is not None:
        return syndication_seconds, "syndication"
    if learned_interval_seconds is not None and learned_interval_seconds > 0:
        return learned_interval_seconds, "learned"
    return policy.default_interval_seconds, "default"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
