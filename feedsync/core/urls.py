from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid"}
DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(raw_url: str) -> str:
    """Canonical form used as a fallback item key.

    Lowercases scheme and host, drops default ports, fragments and tracking
    query parameters, and sorts the remaining query.
    """
    parsed = urlparse(raw_url.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"not an absolute url: {raw_url!r}")

    scheme = parsed.scheme.lower()
    host, port = _split_host_port(parsed.netloc.lower())
    if port and DEFAULT_PORTS.get(scheme) == port:
        port = ""
    netloc = host if not port else f"{host}:{port}"

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    return urlunparse((scheme, netloc, path, "", urlencode(query_pairs, doseq=True), ""))


def origin_key(raw_url: str) -> str:
    """``scheme://host[:port]`` for per-origin rate limiting."""
    parsed = urlparse(raw_url.strip())
    scheme = parsed.scheme.lower()
    if scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"unsupported url for origin: {raw_url!r}")
    host, port = _split_host_port(parsed.netloc.lower())
    if port and DEFAULT_PORTS.get(scheme) == port:
        port = ""
    return f"{scheme}://{host}" if not port else f"{scheme}://{host}:{port}"


def _split_host_port(netloc: str) -> tuple[str, str]:
    if "@" in netloc:
        netloc = netloc.rsplit("@", maxsplit=1)[1]
    if netloc.startswith("["):
        host, _, rest = netloc.partition("]")
        return host + "]", rest.lstrip(":")
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        return host, port
    return netloc, ""


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS
