"""
Site adapter contract.

A site is described by a SiteAdapter subclass. Optional behaviour is declared
through `capabilities` instead of being detected by attribute presence, so the
runner only ever branches on a closed set of Capability values.
"""
import enum
import re
from dataclasses import dataclass
from typing import FrozenSet, Optional, Pattern, Tuple

from ..errors import ConfigurationError
from ..models import Product
from ..pacing import PacingConfig
from ..urls import normalize_url


class Capability(enum.Enum):
    CUSTOM_EXTRACTOR = "custom_extractor"
    CONSENT_HANDLER = "consent_handler"
    FASTPATH_ADJUSTER = "fastpath_adjuster"


@dataclass(frozen=True)
class DiscoveryConfig:
    sitemap_urls: Tuple[str, ...] = ()
    product_url_pattern: Optional[str] = None
    # added as extra seeds from the second discovery attempt on
    retry_sitemap_urls: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FallbackSelectors:
    """CSS selectors tried in order when a page has no JSON-LD product.
    A trailing "@attr" reads that attribute instead of the element text."""
    title: Tuple[str, ...] = ()
    price: Tuple[str, ...] = ()
    original: Tuple[str, ...] = ()
    brand: Tuple[str, ...] = ()
    image: Tuple[str, ...] = ()


class SiteAdapter:
    key: str = ""
    display_name: str = ""
    base_host: str = ""
    discovery: DiscoveryConfig = DiscoveryConfig()
    pacing: PacingConfig = PacingConfig()
    fallback_selectors: FallbackSelectors = FallbackSelectors()
    default_currency: Optional[str] = None
    capabilities: FrozenSet[Capability] = frozenset()

    def __init__(self):
        if not self.key or not self.base_host:
            raise ConfigurationError(f"{type(self).__name__} needs a key and a base_host")
        self._product_rx: Optional[Pattern[str]] = None
        if self.discovery.product_url_pattern:
            try:
                self._product_rx = re.compile(self.discovery.product_url_pattern, re.IGNORECASE)
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid product URL pattern for site {self.key!r}: {e}"
                ) from e

    def __repr__(self):
        return f"<{type(self).__name__} key={self.key!r} host={self.base_host!r}>"

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def normalize_url(self, raw: str) -> str:
        return normalize_url(raw)

    def matches_product_url(self, url: str) -> bool:
        if self._product_rx is None:
            return True
        return bool(self._product_rx.search(url))

    async def consent(self, page, transport) -> None:
        """Dismiss a cookie/consent banner. Only called with CONSENT_HANDLER."""
        raise NotImplementedError

    async def custom_extract(self, page) -> Product:
        """Site-specific extraction. Only called with CUSTOM_EXTRACTOR."""
        raise NotImplementedError

    def fastpath_adjust(self, html: str, product: Product) -> Product:
        """Post-process a standard extraction. Only called with FASTPATH_ADJUSTER."""
        raise NotImplementedError

