"""
Starting point for a new site. Copy, rename and fill in the selectors.
"""
from ..pacing import PacingConfig, RampStep
from .base import DiscoveryConfig, FallbackSelectors, SiteAdapter


class TemplateAdapter(SiteAdapter):
    key = "_template"
    display_name = "Template"
    base_host = "example.com"
    default_currency = "SEK"

    discovery = DiscoveryConfig(
        sitemap_urls=("https://example.com/sitemap.xml",),
        product_url_pattern=r"/product/",
    )

    pacing = PacingConfig(
        host_max_nav_rps=1.6,
        ramp=(RampStep(0, 1.0), RampStep(900, 1.3), RampStep(3600, 1.6)),
        goto_min_spacing_ms=9000,
        min_delay_ms=300,
        max_delay_ms=800,
        fetch_retries=6,
        fetch_retry_base_ms=1000,
        error_window=900,
        error_rate_warn=0.04,
        error_rate_good=0.015,
        cooldown_seconds=150,
    )

    fallback_selectors = FallbackSelectors(
        title=("h1", '[data-testid*="title" i]'),
        price=(".price", '[data-testid*="price" i]'),
        original=("del", ".old-price", ".strike", ".compare-at"),
        brand=('[itemprop="brand"]', ".brand"),
        image=('meta[property="og:image"]@content', 'img[data-testid*="image" i]@src'),
    )
