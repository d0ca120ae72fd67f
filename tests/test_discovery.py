import asyncio
import gzip

from conftest import ShopAdapter, fake_fetch

from catalog_crawler.config import RunConfig
from catalog_crawler.discovery import (
    SitemapDiscovery,
    build_seed_candidates,
    discover_with_attempts,
    parse_sitemap,
)
from catalog_crawler.errors import FetchError
from catalog_crawler.fetcher import decode_body
from catalog_crawler.robots import parse_robots_sitemaps


def sitemap_index(*locs):
    body = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<?xml version="1.0"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{body}</sitemapindex>'


def urlset(*entries):
    parts = []
    for entry in entries:
        loc, lastmod = entry if isinstance(entry, tuple) else (entry, None)
        lm = f"<lastmod>{lastmod}</lastmod>" if lastmod else ""
        parts.append(f"<url><loc>{loc}</loc>{lm}</url>")
    return f'<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{"".join(parts)}</urlset>'


def is_product(url):
    return "/p/" in url


def test_parse_sitemap_kinds():
    kind, entries = parse_sitemap(sitemap_index("https://shop.test/a.xml"))
    assert kind == "index" and entries[0].loc == "https://shop.test/a.xml"
    kind, entries = parse_sitemap(urlset(("https://shop.test/p/1", "2024-05-01")))
    assert kind == "urlset" and entries[0].lastmod == "2024-05-01"
    assert parse_sitemap("<html><body>not a sitemap</body></html>") == (None, [])


def test_index_with_query_variants_deduplicates():
    fetch = fake_fetch({
        "https://shop.test/index.xml": sitemap_index("https://shop.test/a.xml", "https://shop.test/b.xml"),
        "https://shop.test/a.xml": urlset("https://shop.test/p/1", "https://shop.test/p/1?color=red"),
        "https://shop.test/b.xml": urlset("https://shop.test/p/1#top", "https://shop.test/about"),
    })
    urls = asyncio.run(SitemapDiscovery(fetch).discover(["https://shop.test/index.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/1"}


def test_malformed_locations_are_skipped():
    fetch = fake_fetch({
        "https://shop.test/index.xml": sitemap_index("http://[broken/a.xml", "https://shop.test/a.xml"),
        "https://shop.test/a.xml": urlset("http://[broken/p/1", "https://shop.test/p/2"),
    })
    urls = asyncio.run(SitemapDiscovery(fetch).discover(["https://shop.test/index.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/2"}
    assert fetch.calls == ["https://shop.test/index.xml", "https://shop.test/a.xml"]


def test_corrupt_gzip_sitemap_is_skipped():
    bodies = {
        "https://shop.test/index.xml": sitemap_index("https://shop.test/bad.xml.gz", "https://shop.test/a.xml").encode(),
        "https://shop.test/bad.xml.gz": gzip.compress(b"<urlset/>")[:10] + b"\xff" * 20 + b"\x00" * 8,
        "https://shop.test/a.xml": urlset("https://shop.test/p/2").encode(),
    }

    async def fetch(url):
        return decode_body(url, bodies[url])

    urls = asyncio.run(SitemapDiscovery(fetch).discover(["https://shop.test/index.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/2"}


def test_cyclic_index_terminates():
    fetch = fake_fetch({
        "https://shop.test/a.xml": sitemap_index("https://shop.test/b.xml"),
        "https://shop.test/b.xml": sitemap_index("https://shop.test/a.xml", "https://shop.test/leaf.xml"),
        "https://shop.test/leaf.xml": urlset("https://shop.test/p/9"),
    })
    discovery = SitemapDiscovery(fetch)
    urls = asyncio.run(discovery.discover(["https://shop.test/a.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/9"}
    assert fetch.calls.count("https://shop.test/a.xml") == 1
    assert discovery.visited == {"https://shop.test/a.xml", "https://shop.test/b.xml", "https://shop.test/leaf.xml"}


def test_unreachable_child_is_skipped():
    fetch = fake_fetch({
        "https://shop.test/index.xml": sitemap_index("https://shop.test/gone.xml", "https://shop.test/ok.xml"),
        "https://shop.test/gone.xml": FetchError("https://shop.test/gone.xml", status=500),
        "https://shop.test/ok.xml": urlset("https://shop.test/p/2"),
    })
    urls = asyncio.run(SitemapDiscovery(fetch).discover(["https://shop.test/index.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/2"}


def test_relative_and_protocol_relative_locations():
    fetch = fake_fetch({
        "https://shop.test/maps/index.xml": sitemap_index("//shop.test/maps/a.xml", "b.xml"),
        "https://shop.test/maps/a.xml": urlset("/p/1"),
        "https://shop.test/maps/b.xml": urlset("//shop.test/p/2"),
    })
    urls = asyncio.run(SitemapDiscovery(fetch).discover(["https://shop.test/maps/index.xml"], is_product, "shop.test"))
    assert urls == {"https://shop.test/p/1", "https://shop.test/p/2"}


def test_lastmod_is_recorded_per_url():
    fetch = fake_fetch({"https://shop.test/s.xml": urlset(("https://shop.test/p/1?x=1", "2024-06-01"))})
    discovery = SitemapDiscovery(fetch)
    asyncio.run(discovery.discover(["https://shop.test/s.xml"], None, "shop.test"))
    assert discovery.lastmod_by_url == {"https://shop.test/p/1": "2024-06-01"}


def test_robots_sitemap_lines():
    body = "User-agent: *\nDisallow: /cart\nSitemap: https://shop.test/s1.xml\nsitemap:https://shop.test/s2.xml\n"
    assert parse_robots_sitemaps(body) == ["https://shop.test/s1.xml", "https://shop.test/s2.xml"]


def test_seed_candidates_order_and_host_filter():
    fetch = fake_fetch({"https://shop.test/robots.txt": "Sitemap: https://shop.test/robots-map.xml\n"})
    cfg = RunConfig(extra_sitemap_urls=("https://cdn.shop.test/extra.xml", "https://other.test/x.xml"))
    seeds = asyncio.run(build_seed_candidates(ShopAdapter(), cfg, fetch))
    assert seeds == [
        "https://shop.test/sitemap.xml",
        "https://cdn.shop.test/extra.xml",
        "https://shop.test/robots-map.xml",
    ]


def test_override_replaces_adapter_sitemaps():
    fetch = fake_fetch({})
    cfg = RunConfig(sitemap_override=("https://shop.test/override.xml",))
    seeds = asyncio.run(build_seed_candidates(ShopAdapter(), cfg, fetch))
    assert seeds == ["https://shop.test/override.xml"]


def test_retry_attempt_adds_extra_sitemaps():
    fetch = fake_fetch({"https://shop.test/backup.xml": urlset("https://shop.test/p/5/")})
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    cfg = RunConfig(discovery_attempts=3, discovery_backoff_ms=1000)
    discovery = asyncio.run(discover_with_attempts(
        ShopAdapter(), cfg, fetch,
        extra_sitemaps_on_retry=["https://shop.test/backup.xml"], sleep=sleep,
    ))
    # adapter normalizer strips the trailing slash
    assert discovery.product_urls == {"https://shop.test/p/5"}
    assert len(sleeps) == 1 and 1.0 <= sleeps[0] <= 1.4


def test_all_attempts_empty():
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    cfg = RunConfig(discovery_attempts=3, discovery_backoff_ms=100)
    discovery = asyncio.run(discover_with_attempts(ShopAdapter(), cfg, fake_fetch({}), sleep=sleep))
    assert discovery.product_urls == set()
    assert len(sleeps) == 2
    assert 0.2 <= sleeps[1] <= 0.6
