from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Protocol
from urllib.parse import urljoin, urlparse

import httpx
from opentelemetry import trace

from feedsync.jobs.cache_headers import CacheControl, parse_cache_headers, parse_retry_after

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PERMANENT_REDIRECT_CODES = {301, 308}
TEMPORARY_REDIRECT_CODES = {302, 303, 307}
REDIRECT_STATUS_CODES = PERMANENT_REDIRECT_CODES | TEMPORARY_REDIRECT_CODES
GONE_STATUS_CODES = {404, 410}
FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"
)
DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)

OK = "ok"
NOT_MODIFIED = "not_modified"
RATE_LIMITED = "rate_limited"
CLIENT_ERROR = "client_error"
SERVER_ERROR = "server_error"
NETWORK_ERROR = "network_error"
TOO_MANY_REDIRECTS = "too_many_redirects"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class RateLimiter(Protocol):
    async def acquire(self, url: str) -> float: ...


@dataclass(slots=True)
class FetchOutcome:
    status: str
    url: str
    final_url: str
    status_code: int | None = None
    body: bytes | None = None
    etag: str | None = None
    last_modified: str | None = None
    cache_control: CacheControl = field(default_factory=CacheControl)
    retry_after_seconds: int | None = None
    permanent_redirect_url: str | None = None
    content_type: str | None = None
    redirect_chain: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    permanent: bool = False
    timeout: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in {OK, NOT_MODIFIED}

    @property
    def responded(self) -> bool:
        return self.status != NETWORK_ERROR


class FeedFetcher:
    """Conditional GET with manual redirect handling.

    Every hop goes through the per-origin rate limiter. Transport failures are
    reported as ``network_error`` outcomes instead of raised.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        rate_limiter: RateLimiter | None = None,
        user_agent: str = "feedsync/0.1",
        max_redirects: int = 5,
        timeout_seconds: float = 30.0,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.client = client
        self.rate_limiter = rate_limiter
        self.user_agent = user_agent
        self.max_redirects = max(0, max_redirects)
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max(1, max_bytes)

    async def fetch(
        self,
        url: str,
        *,
        etag: str | None = None,
        last_modified: str | None = None,
        now: datetime | None = None,
    ) -> FetchOutcome:
        headers = {"User-Agent": self.user_agent, "Accept": FEED_ACCEPT}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        with tracer.start_as_current_span("fetch.request") as span:
            span.set_attribute("http.url", url)
            outcome = await self._follow(url, headers=headers, now=now)
            if outcome.status_code is not None:
                span.set_attribute("http.status_code", outcome.status_code)
            span.set_attribute("fetch.status", outcome.status)
        return outcome

    async def _follow(self, url: str, *, headers: dict[str, str], now: datetime | None) -> FetchOutcome:
        current_url = url
        chain: list[dict[str, Any]] = []
        permanent_target: str | None = None

        for _ in range(self.max_redirects + 1):
            if urlparse(current_url).scheme.lower() not in {"http", "https"}:
                return FetchOutcome(
                    status=CLIENT_ERROR,
                    url=url,
                    final_url=current_url,
                    redirect_chain=chain,
                    permanent_redirect_url=permanent_target,
                    error=f"Unsupported URL scheme: {current_url}",
                )
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire(current_url)
            try:
                async with self.client.stream(
                    "GET", current_url, headers=headers, timeout=self.timeout_seconds
                ) as response:
                    if response.status_code not in REDIRECT_STATUS_CODES:
                        body = None
                        if 200 <= response.status_code < 300:
                            body = await self._read_body(response)
                            if body is None:
                                return self._too_large(
                                    response, url=url, chain=chain, permanent_target=permanent_target
                                )
                        return self._classify(
                            response,
                            body=body,
                            url=url,
                            chain=chain,
                            permanent_target=permanent_target,
                            now=now,
                        )
                    status_code = response.status_code
                    location = response.headers.get("location")
                    response_url = str(response.url)
            except httpx.TimeoutException:
                return FetchOutcome(
                    status=NETWORK_ERROR,
                    url=url,
                    final_url=current_url,
                    redirect_chain=chain,
                    permanent_redirect_url=permanent_target,
                    error=f"Request timed out after {self.timeout_seconds:g}s",
                    timeout=True,
                )
            except httpx.HTTPError as exc:
                return FetchOutcome(
                    status=NETWORK_ERROR,
                    url=url,
                    final_url=current_url,
                    redirect_chain=chain,
                    permanent_redirect_url=permanent_target,
                    error=describe_network_error(exc),
                )

            if not location:
                return FetchOutcome(
                    status=CLIENT_ERROR,
                    url=url,
                    final_url=current_url,
                    status_code=status_code,
                    redirect_chain=chain,
                    permanent_redirect_url=permanent_target,
                    error=f"HTTP {status_code} redirect without Location header",
                )
            next_url = urljoin(response_url, location.strip())
            chain.append({"from_url": current_url, "to_url": next_url, "status_code": status_code})
            if status_code in PERMANENT_REDIRECT_CODES:
                permanent_target = next_url
            current_url = next_url

        return FetchOutcome(
            status=TOO_MANY_REDIRECTS,
            url=url,
            final_url=current_url,
            redirect_chain=chain,
            permanent_redirect_url=None,
            error=f"Too many redirects (more than {self.max_redirects})",
        )

    async def _read_body(self, response: httpx.Response) -> bytes | None:
        """Body of a 2xx response, or ``None`` once it grows past ``max_bytes``."""
        declared = response.headers.get("content-length", "").strip()
        if declared.isdigit() and int(declared) > self.max_bytes:
            return None
        received = bytearray()
        async for chunk in response.aiter_bytes():
            received.extend(chunk)
            if len(received) > self.max_bytes:
                return None
        return bytes(received)

    def _too_large(
        self,
        response: httpx.Response,
        *,
        url: str,
        chain: list[dict[str, Any]],
        permanent_target: str | None,
    ) -> FetchOutcome:
        logger.warning("response body too large url=%s max_bytes=%s", url, self.max_bytes)
        return FetchOutcome(
            status=CLIENT_ERROR,
            url=url,
            final_url=str(response.url),
            status_code=response.status_code,
            redirect_chain=chain,
            permanent_redirect_url=permanent_target if permanent_target != url else None,
            error=f"Response body exceeds {self.max_bytes} bytes",
        )

    def _classify(
        self,
        response: httpx.Response,
        *,
        body: bytes | None,
        url: str,
        chain: list[dict[str, Any]],
        permanent_target: str | None,
        now: datetime | None,
    ) -> FetchOutcome:
        code = response.status_code
        cache = parse_cache_headers(response.headers)
        outcome = FetchOutcome(
            status=OK,
            url=url,
            final_url=str(response.url),
            status_code=code,
            etag=cache.etag,
            last_modified=cache.last_modified,
            cache_control=cache.cache_control,
            content_type=response.headers.get("content-type"),
            redirect_chain=chain,
            permanent_redirect_url=permanent_target if permanent_target != url else None,
        )

        if code == 304:
            outcome.status = NOT_MODIFIED
        elif 200 <= code < 300:
            outcome.body = body
        elif code == 429:
            outcome.status = RATE_LIMITED
            outcome.retry_after_seconds = parse_retry_after(response.headers.get("retry-after"), now=now)
            outcome.error = "HTTP 429: Too Many Requests"
        elif 500 <= code < 600:
            outcome.status = SERVER_ERROR
            outcome.retry_after_seconds = parse_retry_after(response.headers.get("retry-after"), now=now)
            outcome.error = _http_error(response)
        else:
            outcome.status = CLIENT_ERROR
            outcome.permanent = code in GONE_STATUS_CODES
            outcome.error = _http_error(response)

        if not outcome.succeeded:
            logger.info("fetch failed url=%s status=%s code=%s", url, outcome.status, code)
        return outcome


def describe_network_error(exc: httpx.HTTPError) -> str:
    """Human-readable text for transport failures, shown as the source's last error."""
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if any(token in lowered for token in DNS_FAILURE_MARKERS):
        return f"DNS lookup failed: {message}"
    if "connection refused" in lowered:
        return "Connection refused"
    if "connection reset" in lowered:
        return "Connection reset by peer"
    if "certificate" in lowered or "ssl" in lowered or "tls" in lowered:
        return f"TLS error: {message}"
    if isinstance(exc, httpx.ConnectError):
        return f"Could not connect: {message}"
    if isinstance(exc, httpx.RemoteProtocolError):
        return f"Protocol error: {message}"
    return f"Network error: {message}"


def _http_error(response: httpx.Response) -> str:
    phrase = response.reason_phrase or ""
    return f"HTTP {response.status_code}: {phrase}".rstrip(": ").rstrip()
