import asyncio
import json

import pytest
from conftest import EAN, ShopAdapter, ok_page, product_html

from catalog_crawler.adapters.apotea import ApoteaAdapter
from catalog_crawler.adapters.base import FallbackSelectors
from catalog_crawler.adapters.kronans import KronansAdapter, deep_find_gtin
from catalog_crawler.errors import ExtractionError
from catalog_crawler.extraction import extract_standard, parse_num

URL = "https://shop.test/p/1"


class SelectorAdapter(ShopAdapter):
    fallback_selectors = FallbackSelectors(
        title=("h1",),
        price=(".price",),
        brand=(".brand",),
        image=('meta[property="og:image"]@content',),
    )


@pytest.mark.parametrize("text, expected", [
    ("1 299,50 kr", 1299.5),
    ("49.90", 49.9),
    ("Pris: 120:-", 120.0),
    (35, 35.0),
    ("gratis", None),
    (None, None),
])
def test_parse_num(text, expected):
    assert parse_num(text) == expected


def test_json_ld_product():
    product = extract_standard(ShopAdapter(), ok_page(URL, product_html("Soap", "19,90", EAN, availability="OutOfStock")))
    assert product.name == "Soap"
    assert product.price == 19.9
    assert product.currency == "SEK"
    assert product.ean == EAN
    assert product.in_stock is False


def test_json_ld_in_graph_with_brand_and_image():
    data = {"@graph": [
        {"@type": "BreadcrumbList"},
        {"@type": ["Product"], "name": "Brush", "brand": {"@type": "Brand", "name": "Acme"},
         "image": ["https://shop.test/i.jpg"], "offers": [{"price": 5, "priceCurrency": "EUR"}]},
    ]}
    html = f'<script type="application/ld+json">{json.dumps(data)}</script>'
    product = extract_standard(ShopAdapter(), ok_page(URL, html))
    assert (product.name, product.brand, product.image_url, product.price, product.currency) == (
        "Brush", "Acme", "https://shop.test/i.jpg", 5.0, "EUR")


def test_fallback_selectors_and_original_price():
    html = (
        '<html><head><meta property="og:image" content="https://shop.test/img.png"></head><body>'
        '<h1> Shampoo 250 ml </h1><span class="price">89,00 kr</span><del>109,00 kr</del>'
        '<span class="brand">Acme</span></body></html>'
    )
    product = extract_standard(SelectorAdapter(), ok_page(URL, html))
    assert product.name == "Shampoo 250 ml"
    assert product.price == 89.0
    assert product.original_price == 109.0
    assert product.brand == "Acme"
    assert product.image_url == "https://shop.test/img.png"


def test_swedish_label_original_price():
    html = '<h1>Cream</h1><span class="price">50 kr</span><p>Ord. pris 65 kr</p>'
    assert extract_standard(SelectorAdapter(), ok_page(URL, html)).original_price == 65.0


def test_gtin_from_embedded_json():
    html = '<h1>Cream</h1><span class="price">50</span><script>var p = {"gtin13": "4006381333931"};</script>'
    assert extract_standard(SelectorAdapter(), ok_page(URL, html)).ean == EAN


def test_nothing_found_raises():
    with pytest.raises(ExtractionError):
        extract_standard(ShopAdapter(), ok_page(URL, "<html><body>404</body></html>"))


def test_apotea_fastpath_sets_currency():
    html = '<script type="application/ld+json">{"@type": "Product", "name": "Gel", "offers": {"price": "10"}}</script>'
    adapter = ApoteaAdapter()
    product = extract_standard(adapter, ok_page("https://www.apotea.se/gel-50ml", html))
    assert product.currency == "SEK"


def test_apotea_product_urls():
    adapter = ApoteaAdapter()
    assert adapter.matches_product_url("https://www.apotea.se/acme-gel-50-ml")
    assert not adapter.matches_product_url("https://www.apotea.se/kategori/hud-2")
    assert not adapter.matches_product_url("https://www.apotea.se/om-oss")


def test_deep_find_gtin():
    data = {"props": {"product": {"additionalProperty": [
        {"name": "Vikt", "value": "50 g"},
        {"name": "EAN-kod", "value": "4006381333931"},
    ]}}}
    assert deep_find_gtin(data) == EAN
    assert deep_find_gtin({"sku": {"barcode": "ean 40123455"}}) == "40123455"
    assert deep_find_gtin({"sku": "123"}) is None


def test_kronans_custom_extract_finds_nested_gtin():
    state = {"product": {"variants": [{"ean13": "4006381333931"}]}}
    html = (
        '<script type="application/ld+json">{"@type": "Product", "name": "Tabs", "offers": {"price": "39"}}</script>'
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(state)}</script>'
    )
    product = asyncio.run(KronansAdapter().custom_extract(ok_page("https://www.kronansapotek.se/p/123", html)))
    assert product.ean == EAN
    assert product.price == 39.0


def test_kronans_label_fallback():
    html = '<h1>Tabs</h1><script type="application/ld+json">{"@type": "Product", "name": "Tabs"}</script><p>EAN: 40123455</p>'
    product = asyncio.run(KronansAdapter().custom_extract(ok_page("https://www.kronansapotek.se/p/1", html)))
    assert product.ean == "40123455"


def test_kronans_zero_padded_gtin14_is_reduced():
    state = {"product": {"gtin14": "0" + EAN}}
    html = (
        '<script type="application/ld+json">{"@type": "Product", "name": "Tabs", "offers": {"price": "39"}}</script>'
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(state)}</script>'
    )
    product = asyncio.run(KronansAdapter().custom_extract(ok_page("https://www.kronansapotek.se/p/123", html)))
    assert product.ean == EAN
