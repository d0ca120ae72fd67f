"""
Kronans Apotek. Discovery relies on robots.txt sitemaps; EANs are buried in
nested JSON (additionalProperty nodes, embedded state), so extraction is custom.
"""
import json
import re
from typing import Optional

from bs4 import BeautifulSoup

from ..extraction import extract_standard
from ..gtin import is_valid_gtin, sanitize_ean
from ..models import Product
from ..pacing import PacingConfig
from .base import Capability, DiscoveryConfig, SiteAdapter

GTIN_KEYS = ("gtin", "gtin8", "gtin12", "gtin13", "gtin14", "ean", "ean13", "barcode")
_GTIN_IN_VALUE = re.compile(r"(?:^|\D)(\d{8}|\d{12,14})(?!\d)")
_GTIN_NEAR_LABEL = re.compile(r"(?:ean|gtin|streckkod|barcode)\D{0,40}(\d{8}|\d{12,14})", re.IGNORECASE)


def deep_find_gtin(node) -> Optional[str]:
    """Walk a JSON structure and return the first GTIN-looking value under a GTIN-ish key."""
    seen = set()
    stack = [node]
    while stack:
        cur = stack.pop()
        if not isinstance(cur, (dict, list)) or id(cur) in seen:
            continue
        seen.add(id(cur))
        if isinstance(cur, list):
            stack.extend(cur)
            continue
        for key, value in cur.items():
            if isinstance(value, (dict, list)):
                stack.append(value)
                continue
            k = key.lower()
            if k in GTIN_KEYS and value is not None:
                m = _GTIN_IN_VALUE.search(str(value))
                if m:
                    return m.group(1)
            # propertyValue nodes: {"name": "EAN", "value": "..."}
            if k in ("name", "propertyid") and isinstance(value, str) \
                    and re.search(r"ean|gtin", value, re.IGNORECASE) and "value" in cur:
                m = _GTIN_IN_VALUE.search(str(cur["value"]))
                if m:
                    return m.group(1)
    return None


class KronansAdapter(SiteAdapter):
    key = "kronans"
    display_name = "Kronans Apotek"
    base_host = "www.kronansapotek.se"
    default_currency = "SEK"
    capabilities = frozenset({Capability.CUSTOM_EXTRACTOR})

    discovery = DiscoveryConfig(product_url_pattern=r"/p/\d+/?")

    pacing = PacingConfig(
        pdp_concurrency=1,
        pdp_timeout_ms=30_000,
        min_delay_ms=100,
        max_delay_ms=300,
    )

    async def custom_extract(self, page) -> Product:
        product = extract_standard(self, page)
        if is_valid_gtin(product.ean):
            return product

        gtin = None
        soup = BeautifulSoup(page.text, "html.parser")
        for script in soup.find_all("script"):
            body = script.string or ""
            if not body.strip().startswith(("{", "[")):
                continue
            try:
                gtin = deep_find_gtin(json.loads(body))
            except ValueError:
                continue
            if gtin:
                break
        if not gtin:
            m = _GTIN_NEAR_LABEL.search(soup.get_text(" ", strip=True))
            gtin = m.group(1) if m else None

        if gtin:
            product = product.model_copy(update={"ean": sanitize_ean(gtin)})
        return product
