import logging
import re
from typing import Awaitable, Callable, List

from .errors import FetchError

logger = logging.getLogger(__name__)

_SITEMAP_LINE = re.compile(r"^\s*Sitemap:\s*(\S+)", re.IGNORECASE)


def parse_robots_sitemaps(robots_txt: str) -> List[str]:
    """Return the Sitemap: URLs advertised in a robots.txt body, in order, deduplicated."""
    urls = []
    for line in robots_txt.splitlines():
        m = _SITEMAP_LINE.match(line)
        if m:
            urls.append(m.group(1).strip())
    return list(dict.fromkeys(urls))


async def robots_sitemaps(base_host: str, fetch: Callable[[str], Awaitable[str]]) -> List[str]:
    """
    Fetch https://<base_host>/robots.txt and return its sitemap URLs.
    A missing or unreachable robots.txt yields an empty list.
    """
    robots_url = f"https://{base_host}/robots.txt"
    logger.info(f"[Robots] Attempting to fetch robots.txt from {robots_url}")
    try:
        body = await fetch(robots_url)
    except FetchError as e:
        logger.warning(f"[Robots] Failed to load robots.txt for {base_host}: {e}")
        return []
    sitemaps = parse_robots_sitemaps(body)
    logger.info(f"[Robots] {len(sitemaps)} sitemap(s) advertised by {robots_url}")
    return sitemaps
