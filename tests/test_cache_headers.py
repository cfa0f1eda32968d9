from __future__ import annotations

from datetime import datetime, timezone

import httpx

from feedsync.jobs.cache_headers import (
    CacheControl,
    effective_max_age,
    parse_cache_control,
    parse_cache_headers,
    parse_retry_after,
)


def test_parse_cache_control_reads_numeric_and_flag_directives() -> None:
    parsed = parse_cache_control('Public, MAX-AGE=600, s-maxage="1200", no-cache, stale-if-error=30, immutable')

    assert parsed.public is True
    assert parsed.no_cache is True
    assert parsed.immutable is True
    assert parsed.max_age == 600
    assert parsed.s_maxage == 1200
    assert parsed.stale_if_error == 30
    assert parsed.no_store is False


def test_parse_cache_control_ignores_invalid_values() -> None:
    parsed = parse_cache_control("max-age=-5, s-maxage=abc, stale-while-revalidate=, ,private")

    assert parsed.max_age is None
    assert parsed.s_maxage is None
    assert parsed.stale_while_revalidate is None
    assert parsed.private is True


def test_parse_cache_control_handles_missing_header() -> None:
    assert parse_cache_control(None) == CacheControl()
    assert parse_cache_control("") == CacheControl()


def test_effective_max_age_prefers_shared_cache_lifetime() -> None:
    assert effective_max_age(CacheControl(max_age=60, s_maxage=900)) == 900
    assert effective_max_age(CacheControl(max_age=60)) == 60
    assert effective_max_age(CacheControl()) is None
    assert effective_max_age(None) is None


def test_effective_max_age_is_disabled_by_no_store() -> None:
    assert effective_max_age(CacheControl(max_age=60, s_maxage=900, no_store=True)) is None


def test_parse_cache_headers_extracts_validators() -> None:
    headers = httpx.Headers(
        {
            "ETag": '"abc123"',
            "Last-Modified": "Wed, 21 Oct 2015 07:28:00 GMT",
            "Cache-Control": "max-age=300",
        }
    )

    parsed = parse_cache_headers(headers)

    assert parsed.etag == '"abc123"'
    assert parsed.last_modified == "Wed, 21 Oct 2015 07:28:00 GMT"
    assert parsed.cache_control.max_age == 300


def test_parse_retry_after_accepts_seconds_and_http_dates() -> None:
    now = datetime(2015, 10, 21, 7, 28, 0, tzinfo=timezone.utc)

    assert parse_retry_after("120", now=now) == 120
    assert parse_retry_after("Wed, 21 Oct 2015 07:38:00 GMT", now=now) == 600
    assert parse_retry_after("Wed, 21 Oct 2015 07:00:00 GMT", now=now) == 0
    assert parse_retry_after("soon", now=now) is None
    assert parse_retry_after(None, now=now) is None
