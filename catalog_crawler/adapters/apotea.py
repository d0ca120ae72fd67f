"""
Apotea.se, sitemap driven.

Product URLs carry at least one digit in the path (ml, g, pack sizes), which
separates them from category and brand listings.
"""
from ..models import Product
from ..pacing import PacingConfig, RampStep
from .base import Capability, DiscoveryConfig, FallbackSelectors, SiteAdapter


class ApoteaAdapter(SiteAdapter):
    key = "apotea"
    display_name = "Apotea"
    base_host = "www.apotea.se"
    default_currency = "SEK"
    capabilities = frozenset({Capability.CONSENT_HANDLER, Capability.FASTPATH_ADJUSTER})

    discovery = DiscoveryConfig(
        sitemap_urls=("https://www.apotea.se/Sitemap/SMPViewAACC",),
        product_url_pattern=(
            r"^https?://(?:www\.)?apotea\.se/"
            r"(?!kategori/|varumarken/|kampanj/|brand/|search/)[^?#]*\d[^?#]*/?$"
        ),
        retry_sitemap_urls=("https://www.apotea.se/sitemap.xml",),
    )

    pacing = PacingConfig(
        host_max_nav_rps=2.4,
        ramp=(RampStep(0, 1.4), RampStep(180, 1.9), RampStep(900, 2.4)),
        pdp_concurrency=2,
        pdp_timeout_ms=25_000,
        goto_min_spacing_ms=5000,
        min_delay_ms=150,
        max_delay_ms=400,
        fetch_retries=6,
        fetch_retry_base_ms=900,
        error_window=900,
        cooldown_seconds=120,
    )

    fallback_selectors = FallbackSelectors(
        title=("h1", '[data-testid*="title" i]', 'meta[property="og:title"]@content'),
        price=('[data-testid*="price" i]', ".price", "[class*='price']", 'meta[itemprop="price"]@content'),
        original=("del", "[class*='strike' i]", "[class*='old' i]", "[class*='compare' i]"),
        brand=('[itemprop="brand"]', ".brand"),
        image=('meta[property="og:image"]@content', "img[alt][src]@src"),
    )

    # Cookiebot remembers a dismissed banner through this cookie.
    CONSENT_COOKIES = {"CookieConsent": "{necessary:true,preferences:false,statistics:false,marketing:false}"}

    async def consent(self, page, transport) -> None:
        if "CybotCookiebotDialog" in page.text:
            transport.set_cookies(self.CONSENT_COOKIES)

    def fastpath_adjust(self, html: str, product: Product) -> Product:
        if not product.currency:
            return product.model_copy(update={"currency": "SEK"})
        return product
