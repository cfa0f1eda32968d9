from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx


@dataclass(slots=True)
class CacheControl:
    max_age: int | None = None
    s_maxage: int | None = None
    no_store: bool = False
    no_cache: bool = False
    private: bool = False
    public: bool = False
    must_revalidate: bool = False
    immutable: bool = False
    stale_while_revalidate: int | None = None
    stale_if_error: int | None = None


@dataclass(slots=True)
class CacheHeaders:
    etag: str | None
    last_modified: str | None
    cache_control: CacheControl


_NUMERIC_DIRECTIVES = {
    "max-age": "max_age",
    "s-maxage": "s_maxage",
    "stale-while-revalidate": "stale_while_revalidate",
    "stale-if-error": "stale_if_error",
}
_FLAG_DIRECTIVES = {
    "no-store": "no_store",
    "no-cache": "no_cache",
    "private": "private",
    "public": "public",
    "must-revalidate": "must_revalidate",
    "immutable": "immutable",
}


def parse_cache_control(header: str | None) -> CacheControl:
    result = CacheControl()
    if not header:
        return result

    for raw_directive in header.lower().split(","):
        directive = raw_directive.strip()
        if not directive:
            continue
        name, separator, raw_value = directive.partition("=")
        name = name.strip()
        if separator:
            attribute = _NUMERIC_DIRECTIVES.get(name)
            seconds = _parse_seconds(raw_value.strip().strip('"'))
            if attribute is not None and seconds is not None:
                setattr(result, attribute, seconds)
            continue
        attribute = _FLAG_DIRECTIVES.get(name)
        if attribute is not None:
            setattr(result, attribute, True)
    return result


def parse_cache_headers(headers: httpx.Headers) -> CacheHeaders:
    return CacheHeaders(
        etag=headers.get("etag") or None,
        last_modified=headers.get("last-modified") or None,
        cache_control=parse_cache_control(headers.get("cache-control")),
    )


def effective_max_age(cache_control: CacheControl | None) -> int | None:
    """Freshness lifetime a shared cache would use; ``no-store`` disables it."""
    if cache_control is None or cache_control.no_store:
        return None
    if cache_control.s_maxage is not None:
        return cache_control.s_maxage
    return cache_control.max_age


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    stripped = value.strip()
    seconds = _parse_seconds(stripped)
    if seconds is not None:
        return seconds

    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0, int((retry_at - current).total_seconds()))


def _parse_seconds(value: str) -> int | None:
    if not value.isdigit():
        return None
    return int(value)
