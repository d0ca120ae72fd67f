"""
Standard product extraction: JSON-LD Product first, DOM selectors as fallback.
"""
import json
import logging
import re
from typing import Iterator, List, Optional

from bs4 import BeautifulSoup

from .adapters.base import Capability
from .errors import ExtractionError
from .gtin import extract_gtin_from_html, is_valid_gtin, sanitize_ean
from .models import Product

logger = logging.getLogger(__name__)

GTIN_KEYS = ("gtin14", "gtin13", "gtin12", "gtin8", "gtin", "ean")

_NUMBER = re.compile(r"(\d+(?:[.,]\d+)?)")
_OLD_PRICE_CLASS = re.compile(
    r"(^|[-_])(old|strike|was|previous|before|compare|former|original)([-_]|$)", re.IGNORECASE
)
_OLD_PRICE_LABELS = (
    re.compile(r"Ord\.?\s*pris[:\s]*([0-9\s.,]+)", re.IGNORECASE),
    re.compile(r"Ordinarie\s*pris[:\s]*([0-9\s.,]+)", re.IGNORECASE),
    re.compile(r"Rek\.?\s*pris[:\s]*([0-9\s.,]+)", re.IGNORECASE),
    re.compile(r"Tidigare\s*pris[:\s]*([0-9\s.,]+)", re.IGNORECASE),
)


def parse_num(text) -> Optional[float]:
    """First number in a price-like string; "1 299,50 kr" -> 1299.5."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text)
    cleaned = re.sub(r"\s", "", str(text).replace("\u00a0", " "))
    m = _NUMBER.search(cleaned)
    if not m:
        return None
    try:
        return float(m.group(1).replace(",", "."))
    except ValueError:
        return None


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def iter_json_ld(soup: BeautifulSoup) -> Iterator[dict]:
    """Every JSON-LD node on the page, with lists and @graph flattened."""
    for tag in soup.find_all("script", type=lambda t: t and "ld+json" in t.lower()):
        try:
            data = json.loads(tag.string or "")
        except ValueError:
            continue
        stack = data if isinstance(data, list) else [data]
        for node in stack:
            if not isinstance(node, dict):
                continue
            yield node
            for child in node.get("@graph") or []:
                if isinstance(child, dict):
                    yield child


def is_product_node(node: dict) -> bool:
    types = node.get("@type")
    types = types if isinstance(types, list) else [types]
    return any(isinstance(t, str) and "product" in t.lower() for t in types)


def product_from_json_ld(node: dict, url: str, default_currency: Optional[str] = None) -> Product:
    offers = _first(node.get("offers")) or {}
    if not isinstance(offers, dict):
        offers = {}
    price = parse_num(offers.get("price") if offers.get("price") is not None else offers.get("lowPrice"))

    availability = offers.get("availability")
    in_stock = None
    if isinstance(availability, str):
        in_stock = "instock" in availability.lower()

    brand = node.get("brand")
    if isinstance(brand, dict):
        brand = brand.get("name")

    image = _first(node.get("image"))
    if isinstance(image, dict):
        image = image.get("url")

    ean = None
    for key in GTIN_KEYS:
        value = node.get(key)
        if value:
            ean = str(value).strip()
            break

    return Product(
        url=url,
        name=_first(node.get("name")),
        price=price,
        currency=offers.get("priceCurrency") or default_currency,
        image_url=image,
        ean=ean,
        brand=brand if isinstance(brand, str) else None,
        in_stock=in_stock,
    )


def select_text(soup: BeautifulSoup, selectors) -> Optional[str]:
    for sel in selectors:
        css, _, attr = sel.partition("@")
        try:
            node = soup.select_one(css)
        except ValueError:
            logger.debug(f"[Extraction] Bad selector skipped: {sel}")
            continue
        if node is None:
            continue
        if attr:
            value = node.get(attr)
        else:
            value = node.get("content") if node.name == "meta" else node.get_text(" ", strip=True)
        if value:
            return value.strip()
    return None


def extract_original_price(soup: BeautifulSoup) -> Optional[float]:
    """Best effort "was" price: <del>, old-price-like classes, then Swedish price labels."""
    candidates: List[str] = []
    del_tag = soup.find("del")
    if del_tag:
        candidates.append(del_tag.get_text(" ", strip=True))
    old = soup.find(class_=_OLD_PRICE_CLASS)
    if old:
        candidates.append(old.get_text(" ", strip=True))
    text = soup.get_text(" ", strip=True)
    for rx in _OLD_PRICE_LABELS:
        m = rx.search(text)
        if m:
            candidates.append(m.group(1))
    for c in candidates:
        n = parse_num(c)
        if n is not None:
            return n
    return None


def extract_standard(adapter, page) -> Product:
    """
    Build a Product from a loaded page.

    Raises ExtractionError when neither a name nor a price can be found.
    """
    soup = BeautifulSoup(page.text, "html.parser")
    product = None

    for node in iter_json_ld(soup):
        if not is_product_node(node):
            continue
        try:
            product = product_from_json_ld(node, page.url, adapter.default_currency)
        except ValueError as e:
            logger.debug(f"[Extraction] Unusable JSON-LD product on {page.url}: {e}")
            continue
        break

    if product is None:
        sel = adapter.fallback_selectors
        product = Product(
            url=page.url,
            name=select_text(soup, sel.title),
            price=parse_num(select_text(soup, sel.price)),
            original_price=parse_num(select_text(soup, sel.original)),
            currency=adapter.default_currency,
            image_url=select_text(soup, sel.image),
            brand=select_text(soup, sel.brand),
        )

    updates = {}
    if product.original_price is None:
        updates["original_price"] = extract_original_price(soup)
    if not is_valid_gtin(product.ean):
        updates["ean"] = extract_gtin_from_html(page.text, free_text=False) or sanitize_ean(product.ean)
    if updates:
        product = product.model_copy(update=updates)

    if adapter.has(Capability.FASTPATH_ADJUSTER):
        product = adapter.fastpath_adjust(page.text, product)

    if not product.name and product.price is None:
        raise ExtractionError(page.url, "no product name or price found")
    return product
