"""
URL canonicalization used for dedup keys and sitemap resolution.
"""
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse


def normalize_url_key(raw: str) -> str:
    """
    Stable dedup key for a URL: query string and fragment removed.

    >>> normalize_url_key("https://site.test/p/1?color=red#reviews")
    'https://site.test/p/1'
    """
    parsed = urlparse(raw.strip())
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {raw!r}")
    path = parsed.path or "/"
    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, "", "", ""))


def normalize_url(raw: str) -> str:
    """Default site normalizer: normalize_url_key plus trailing slash removal."""
    key = normalize_url_key(raw)
    parsed = urlparse(key)
    if parsed.path != "/" and parsed.path.endswith("/"):
        key = urlunparse(parsed._replace(path=parsed.path.rstrip("/") or "/"))
    return key


def resolve_location(base_url: str, loc: str) -> Optional[str]:
    """
    Resolve a sitemap <loc> value against the sitemap it came from.
    Handles absolute, protocol-relative (//), absolute-path (/) and relative forms.
    Returns None when the result is not an http(s) URL or cannot be parsed.
    """
    loc = loc.strip()
    if not loc:
        return None
    try:
        if loc.startswith("//"):
            resolved = "https:" + loc
        else:
            resolved = urljoin(base_url, loc)
        parsed = urlparse(resolved)
    except ValueError:
        # e.g. an unbalanced IPv6 bracket
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return resolved


def host_of(url: str) -> str:
    return urlparse(url).netloc.lower()
