from __future__ import annotations

from datetime import datetime, timedelta, timezone

from feedsync.core.config import Settings
from feedsync.jobs.cache_headers import CacheControl
from feedsync.jobs.scheduling import (
    SchedulePolicy,
    compute_next_run,
    failure_backoff_seconds,
    jitter_seconds,
    learn_interval,
    syndication_to_seconds,
)
from feedsync.schemas.feeds import SyndicationHints

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
POLICY = SchedulePolicy()
WEEK = 7 * 24 * 60 * 60


def test_cache_control_max_age_drives_schedule() -> None:
    next_run = compute_next_run(POLICY, now=NOW, cache_control=CacheControl(max_age=7200), random_value=0.0)

    assert next_run.reason == "cache_control"
    assert next_run.interval_seconds == 7200
    assert next_run.next_run_at == NOW + timedelta(seconds=7200)


def test_tiny_max_age_is_clamped_to_floor() -> None:
    next_run = compute_next_run(POLICY, now=NOW, cache_control=CacheControl(max_age=0), random_value=0.0)

    assert next_run.reason == "cache_control_clamped_min"
    assert next_run.interval_seconds == 60


def test_huge_max_age_is_clamped_to_ceiling_even_with_jitter() -> None:
    next_run = compute_next_run(POLICY, now=NOW, cache_control=CacheControl(max_age=10 * WEEK), random_value=1.0)

    assert next_run.reason == "cache_control_clamped_max"
    assert next_run.next_run_at == NOW + timedelta(seconds=WEEK)


def test_hint_priority_falls_through_ttl_syndication_learned_default() -> None:
    syndication = SyndicationHints(update_period="daily", update_frequency=2)

    assert compute_next_run(POLICY, now=NOW, ttl_minutes=90, syndication=syndication, random_value=0.0).reason == "ttl"
    assert compute_next_run(POLICY, now=NOW, syndication=syndication, random_value=0.0).interval_seconds == 43200
    assert compute_next_run(POLICY, now=NOW, learned_interval_seconds=5400, random_value=0.0).reason == "learned"
    assert compute_next_run(POLICY, now=NOW, random_value=0.0).reason == "default"
    assert compute_next_run(POLICY, now=NOW, random_value=0.0).interval_seconds == 3600


def test_no_store_falls_back_to_feed_hints() -> None:
    next_run = compute_next_run(
        POLICY,
        now=NOW,
        cache_control=CacheControl(max_age=600, no_store=True),
        ttl_minutes=30,
        random_value=0.0,
    )

    assert next_run.reason == "ttl"
    assert next_run.interval_seconds == 1800


def test_failure_backoff_is_exponential_and_capped() -> None:
    assert failure_backoff_seconds(POLICY, 1) == 1800
    assert failure_backoff_seconds(POLICY, 2) == 3600
    assert failure_backoff_seconds(POLICY, 3) == 7200
    assert failure_backoff_seconds(POLICY, 8) == 230400
    assert failure_backoff_seconds(POLICY, 9) == 460800
    assert failure_backoff_seconds(POLICY, 10) == WEEK
    assert failure_backoff_seconds(POLICY, 500) == WEEK


def test_failures_never_schedule_beyond_seven_days_or_below_one_minute() -> None:
    for failures in range(1, 40):
        for random_value in (0.0, 0.5, 1.0):
            next_run = compute_next_run(
                POLICY,
                now=NOW,
                consecutive_failures=failures,
                random_value=random_value,
            )
            assert timedelta(minutes=1) <= next_run.next_run_at - NOW <= timedelta(days=7)


def test_failures_override_cache_hints() -> None:
    next_run = compute_next_run(
        POLICY,
        now=NOW,
        cache_control=CacheControl(max_age=60),
        consecutive_failures=2,
        random_value=0.0,
    )

    assert next_run.reason == "failure_backoff"
    assert next_run.interval_seconds == 3600


def test_retry_after_is_honored_and_clamped() -> None:
    honored = compute_next_run(POLICY, now=NOW, consecutive_failures=1, retry_after_seconds=900, random_value=0.0)
    too_soon = compute_next_run(POLICY, now=NOW, consecutive_failures=1, retry_after_seconds=5, random_value=0.0)

    assert honored.reason == "retry_after"
    assert honored.interval_seconds == 900
    assert too_soon.reason == "retry_after_clamped_min"
    assert too_soon.interval_seconds == 60


def test_jitter_is_fraction_of_interval_and_capped() -> None:
    assert jitter_seconds(POLICY, 3600, 0.5) == 180
    assert jitter_seconds(POLICY, WEEK, 1.0) == 1800
    assert jitter_seconds(POLICY, 3600, 0.0) == 0


def test_syndication_to_seconds_handles_frequency() -> None:
    assert syndication_to_seconds(SyndicationHints(update_period="hourly")) == 3600
    assert syndication_to_seconds(SyndicationHints(update_period="weekly", update_frequency=7)) == 86400
    assert syndication_to_seconds(SyndicationHints(update_period="daily", update_frequency=0)) is None
    assert syndication_to_seconds(SyndicationHints()) is None
    assert syndication_to_seconds(None) is None


def test_learn_interval_uses_median_gap() -> None:
    published = [
        NOW,
        NOW - timedelta(hours=1),
        NOW - timedelta(hours=3),
        NOW - timedelta(hours=4),
        None,
    ]

    assert learn_interval(published) == 3600


def test_learn_interval_requires_enough_samples() -> None:
    assert learn_interval([NOW, NOW - timedelta(hours=1)]) is None
    assert learn_interval([NOW, NOW, NOW]) is None


def test_policy_from_settings() -> None:
    settings = Settings(min_fetch_interval_seconds=120, default_fetch_interval_seconds=1800, jitter_fraction=0.0)

    policy = SchedulePolicy.from_settings(settings)

    assert policy.min_interval_seconds == 120
    assert policy.default_interval_seconds == 1800
    assert compute_next_run(policy, now=NOW, random_value=1.0).interval_seconds == 1800
