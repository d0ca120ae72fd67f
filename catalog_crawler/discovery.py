import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from bs4 import BeautifulSoup

from .config import RunConfig
from .errors import FetchError
from .models import SitemapEntry
from .robots import robots_sitemaps
from .urls import host_of, normalize_url_key, resolve_location

logger = logging.getLogger(__name__)

FetchText = Callable[[str], Awaitable[str]]
UrlFilter = Callable[[str], bool]


def parse_sitemap(xml: str):
    """
    Classify a sitemap document and pull out its entries.

    :return: ("index", [SitemapEntry]) for a sitemap index, ("urlset", [...])
             for a leaf sitemap, (None, []) for anything else.
    """
    lower = xml.lower()
    if "<sitemapindex" in lower:
        kind, container = "index", "sitemap"
    elif "<urlset" in lower:
        kind, container = "urlset", "url"
    else:
        return None, []

    soup = BeautifulSoup(xml, "html.parser")
    entries = []
    for node in soup.find_all(container):
        loc = node.find("loc")
        if loc is None or not loc.get_text(strip=True):
            continue
        lastmod = node.find("lastmod")
        entries.append(SitemapEntry(
            loc=loc.get_text(strip=True),
            lastmod=lastmod.get_text(strip=True) if lastmod else None,
        ))
    if not entries:
        # <loc> elements outside the usual wrappers
        entries = [SitemapEntry(loc=loc.get_text(strip=True))
                   for loc in soup.find_all("loc") if loc.get_text(strip=True)]
    return kind, entries


class SitemapDiscovery:
    """
    Walks sitemap index trees breadth first and collects product URLs.

    A visited set stops cyclic indexes; a sitemap that cannot be fetched or
    parsed is logged and skipped, and whatever was collected is returned.
    """

    def __init__(self, fetch: FetchText, normalize: Callable[[str], str] = normalize_url_key):
        self.fetch = fetch
        self.normalize = normalize
        self.visited: Set[str] = set()
        self.product_urls: Set[str] = set()
        self.lastmod_by_url: Dict[str, str] = {}

    async def discover(self, seed_candidates: Sequence[str], product_filter: Optional[UrlFilter],
                       base_host: str) -> Set[str]:
        queue = deque(dict.fromkeys(seed_candidates))
        logger.info(f"[Discovery] Starting for {base_host} with {len(queue)} seed sitemap(s)")

        while queue:
            url = queue.popleft()
            if url in self.visited:
                logger.debug(f"[Discovery] Already visited: {url}")
                continue
            self.visited.add(url)

            try:
                xml = await self.fetch(url)
            except FetchError as e:
                logger.warning(f"[Discovery] Skipping unreachable sitemap {url}: {e}")
                continue

            kind, entries = parse_sitemap(xml)
            if kind is None:
                logger.debug(f"[Discovery] Not a sitemap, skipped: {url}")
                continue

            if kind == "index":
                for entry in entries:
                    child = resolve_location(url, entry.loc)
                    if child and child not in self.visited:
                        queue.append(child)
                logger.debug(f"[Discovery] Index {url} -> {len(entries)} child sitemap(s)")
                continue

            self._collect(url, entries, product_filter)

        logger.info(
            f"[Discovery] Finished for {base_host}: {len(self.product_urls)} product URL(s) "
            f"from {len(self.visited)} sitemap(s)"
        )
        return set(self.product_urls)

    def _collect(self, sitemap_url: str, entries: Iterable[SitemapEntry],
                 product_filter: Optional[UrlFilter]):
        before = len(self.product_urls)
        for entry in entries:
            absolute = resolve_location(sitemap_url, entry.loc)
            if not absolute:
                continue
            try:
                key = self.normalize(absolute)
            except ValueError:
                continue
            if product_filter is not None and not product_filter(key):
                continue
            self.product_urls.add(key)
            if entry.lastmod:
                self.lastmod_by_url[key] = entry.lastmod
        logger.debug(f"[Discovery] Urlset {sitemap_url} added {len(self.product_urls) - before} URL(s)")


async def build_seed_candidates(adapter, run_config: RunConfig, fetch: FetchText,
                                extra_sitemaps: Sequence[str] = ()) -> List[str]:
    """
    Seed sitemaps for one site, in order:
      1. the environment override, or else the adapter's own sitemap URLs
      2. extra sitemap URLs whose host belongs to the site's base host
      3. sitemaps advertised by robots.txt
    """
    candidates: List[str] = []
    if run_config.sitemap_override:
        candidates.extend(run_config.sitemap_override)
    else:
        candidates.extend(adapter.discovery.sitemap_urls)

    base_host = adapter.base_host
    for url in tuple(run_config.extra_sitemap_urls) + tuple(extra_sitemaps):
        host = host_of(url)
        if host and (not base_host or host.endswith(base_host)):
            candidates.append(url)
        else:
            logger.debug(f"[Discovery] Ignoring extra sitemap for another host: {url}")

    candidates.extend(await robots_sitemaps(base_host, fetch))
    return list(dict.fromkeys(candidates))


async def discover_with_attempts(adapter, run_config: RunConfig, fetch: FetchText,
                                 extra_sitemaps_on_retry: Sequence[str] = (),
                                 sleep=asyncio.sleep) -> SitemapDiscovery:
    """
    Run whole discovery passes until one finds URLs or attempts run out.

    extra_sitemaps_on_retry are added as extra seeds from the second pass on,
    for sites whose primary sitemap is flaky.
    """
    attempts = max(1, run_config.discovery_attempts)
    discovery = None
    for attempt in range(1, attempts + 1):
        extra = extra_sitemaps_on_retry if attempt >= 2 else ()
        seeds = await build_seed_candidates(adapter, run_config, fetch, extra)
        discovery = SitemapDiscovery(fetch, normalize=adapter.normalize_url)
        urls = await discovery.discover(seeds, adapter.matches_product_url, adapter.base_host)
        logger.info(f"[Discovery] attempt {attempt} site={adapter.key} urls={len(urls)}")
        if urls:
            break
        if attempt < attempts:
            delay = run_config.discovery_backoff_ms * (2 ** (attempt - 1)) + random.randint(0, 400)
            await sleep(delay / 1000)
    return discovery
