import asyncio
import json

import pytest

from catalog_crawler.adapters.base import DiscoveryConfig, SiteAdapter
from catalog_crawler.errors import FetchError, PersistenceError
from catalog_crawler.pacing import PacingConfig
from catalog_crawler.transport import PageResponse

EAN = "4006381333931"


class ShopAdapter(SiteAdapter):
    key = "shop"
    display_name = "Test Shop"
    base_host = "shop.test"
    default_currency = "SEK"
    discovery = DiscoveryConfig(
        sitemap_urls=("https://shop.test/sitemap.xml",),
        product_url_pattern=r"/p/",
    )
    pacing = PacingConfig(
        host_max_nav_rps=1000,
        pdp_concurrency=1,
        fetch_retries=0,
        fetch_retry_base_ms=100,
        cooldown_seconds=30,
        cooldown_threshold=5,
    )


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeTransport:
    """Answers each fetch with handler(url, call_index) and records (url, time)."""

    def __init__(self, handler, clock=None):
        self.handler = handler
        self.clock = clock
        self.calls = []
        self.cookies = {}

    def set_cookies(self, cookies):
        self.cookies.update(cookies)

    async def fetch(self, url, timeout_ms=30_000, wait_until="domcontentloaded"):
        self.calls.append((url, self.clock() if self.clock else None))
        result = self.handler(url, len(self.calls) - 1)
        if isinstance(result, Exception):
            raise result
        return result


class FakeStorage:
    def __init__(self, records=None, fail=False):
        self.records = dict(records or {})
        self.fail = fail
        self.batches = []
        self.lastmods = {}
        self.crawled = {}

    def write_records(self, records, site_key=None):
        if self.fail:
            raise PersistenceError("disk full")
        records = list(records)
        self.batches.append([r.id for r in records])
        for r in records:
            self.records[r.id] = r.model_copy(deep=True)
        return len(records)

    def read_by_host(self, host):
        return {k: v.model_copy(deep=True) for k, v in self.records.items() if k.startswith(host + "|")}

    def read_snapshot_index(self):
        return dict(self.lastmods), dict(self.crawled)

    def write_snapshot_index(self, lastmod_by_url, last_crawled_at_by_url):
        self.lastmods.update(lastmod_by_url)
        self.crawled.update(last_crawled_at_by_url)


def product_html(name, price, ean=None, currency="SEK", availability="InStock"):
    node = {
        "@context": "https://schema.org",
        "@type": "Product",
        "name": name,
        "offers": {
            "@type": "Offer",
            "price": str(price),
            "priceCurrency": currency,
            "availability": f"https://schema.org/{availability}",
        },
    }
    if ean:
        node["gtin13"] = ean
    return (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(node)}</script>'
        f"</head><body><h1>{name}</h1></body></html>"
    )


def ok_page(url, html):
    return PageResponse(url=url, status=200, headers={}, text=html)


def fake_fetch(pages):
    """async fetch_text over a {url: body} map; missing URLs raise FetchError(404)."""
    calls = []

    async def fetch(url):
        calls.append(url)
        if url not in pages:
            raise FetchError(url, status=404)
        body = pages[url]
        if isinstance(body, Exception):
            raise body
        return body

    fetch.calls = calls
    return fetch


@pytest.fixture
def adapter():
    return ShopAdapter()


@pytest.fixture
def clock():
    return FakeClock()
