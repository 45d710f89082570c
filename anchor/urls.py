"""URL validation, normalization and domain extraction."""

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# Host with TLD, localhost or IPv4, optional port and path
URL_PATTERN = re.compile(
    r"^(?:https?://)?"
    r"(?:(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}"
    r"|localhost"
    r"|\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})"
    r"(?::\d{1,5})?"
    r"(?:/\S*)?$",
    re.IGNORECASE,
)

# Query parameters dropped before duplicate detection
TRACKING_PARAMS = {"fbclid", "gclid", "ref", "source"}
TRACKING_PREFIXES = ("utm_",)


def validate_url(url: str | None) -> str | None:
    """
    Validate URL format.

    Returns:
        Error message if invalid, None if valid
    """
    if not url or not url.strip():
        return "URL is required"

    url = url.strip()
    if url.endswith("://") or ".." in url or not URL_PATTERN.match(url):
        return "Please enter a valid URL"

    return None


def ensure_protocol(url: str) -> str:
    """Prepend https:// if the URL has no http(s) scheme."""
    url = url.strip()
    if not re.match(r"^https?://", url, re.IGNORECASE):
        return f"https://{url}"
    return url


def _is_tracking_param(name: str) -> bool:
    name = name.lower()
    return name in TRACKING_PARAMS or name.startswith(TRACKING_PREFIXES)


def normalize_url(url: str) -> str:
    """
    Normalize a URL for duplicate detection.

    - Removes tracking params (utm_*, fbclid, gclid, ref, source)
    - Removes www. subdomain
    - Removes fragment and trailing slash
    - Converts to lowercase

    Example:
        https://www.Example.com/a/?utm_source=x#top -> https://example.com/a
    """
    parts = urlsplit(ensure_protocol(url))

    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]

    query = urlencode(
        [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)]
    )
    path = parts.path.rstrip("/")

    return urlunsplit((parts.scheme.lower(), host, path, query, "")).lower()


def extract_domain(url: str) -> str:
    """
    Extract domain from URL.

    Examples:
        https://www.example.com/path -> example.com
        http://sub.example.co.uk -> sub.example.co.uk
    """
    host = urlsplit(ensure_protocol(url)).hostname
    if not host or "%" in host:
        return url
    return host[4:] if host.startswith("www.") else host
