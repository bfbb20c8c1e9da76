from typing import Optional
from urllib.parse import SplitResult, urlsplit

from aegis.errors import InvalidURL


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    return url


def split_url(url: str) -> SplitResult:
    """
    Parse a URL, raising InvalidURL when it has no scheme, no host,
    or a malformed port / IPv6 literal.
    """
    url = normalize_url(url)
    if not url:
        raise InvalidURL(url)

    try:
        parts = urlsplit(url)
        # Accessing .port validates it (raises ValueError when out of range)
        parts.port
    except ValueError as e:
        raise InvalidURL(url, reason=f"Invalid URL format ({e})") from e

    if not parts.scheme or not parts.hostname:
        raise InvalidURL(url)
    if any(c.isspace() for c in parts.netloc):
        raise InvalidURL(url)

    return parts


def extract_domain(url: str) -> str:
    """Lower-cased hostname of a URL. Raises InvalidURL."""
    return split_url(url).hostname


def raw_hostname(parts: SplitResult) -> Optional[str]:
    """Hostname exactly as written (case preserved), without userinfo or port."""
    netloc = parts.netloc.rpartition("@")[2]
    if netloc.startswith("["):
        return netloc[1:netloc.find("]")] if "]" in netloc else None
    host = netloc.partition(":")[0]
    return host or None
