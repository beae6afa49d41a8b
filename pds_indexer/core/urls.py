from __future__ import annotations

from urllib.parse import urlparse

AT_URI_SCHEME = "at://"


def normalize_host_url(raw_url: str) -> str:
    """Return the registry key for a PDS endpoint.

    Scheme and host are lower-cased, default ports and any path, query or
    fragment are dropped, and the result never carries a trailing slash.
    A bare hostname is treated as https.
    """
    candidate = raw_url.strip()
    if not candidate:
        raise ValueError("host url must be a non-empty string")
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    scheme = parsed.scheme.lower()
    if scheme not in {"http", "https"}:
        raise ValueError(f"unsupported scheme for host url: {scheme}")

    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError(f"host url has no hostname: {raw_url!r}")

    port = parsed.port
    if port is None or (scheme == "http" and port == 80) or (scheme == "https" and port == 443):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def hostname_of(host_url: str) -> str | None:
    candidate = host_url.strip()
    if not candidate:
        return None
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        hostname = urlparse(candidate).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def did_from_at_uri(uri: str) -> str | None:
    if not uri.startswith(AT_URI_SCHEME):
        return None
    authority = uri[len(AT_URI_SCHEME) :].split("/", maxsplit=1)[0]
    return authority or None


def rkey_or_passthrough(value: str) -> str:
    """Last path segment of an AT-URI, or the value itself for bare ids."""
    if not value.startswith(AT_URI_SCHEME):
        return value
    segments = [segment for segment in value[len(AT_URI_SCHEME) :].split("/") if segment]
    if len(segments) < 3:
        return value
    return segments[-1]


def truncate_text(value: str, limit: int = 500) -> str:
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 3)] + "..."
