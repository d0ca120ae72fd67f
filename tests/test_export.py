import json

import pytest

import main
from catalog_crawler.adapters.base import DiscoveryConfig, SiteAdapter
from catalog_crawler.adapters.registry import DEFAULT_SITES, get_adapter, sites_in_category
from catalog_crawler.config import RunConfig
from catalog_crawler.crawler_manager import CrawlerManager, crawl_site_sync
from catalog_crawler.errors import ConfigurationError
from catalog_crawler.export import export_snapshot
from catalog_crawler.models import Product, RunSummary
from catalog_crawler.store import upsert


def test_export_writes_products_and_summary(tmp_path):
    store = {}
    upsert(store, Product(url="https://shop.test/p/2", name="B"), "shop.test", now="t1")
    upsert(store, Product(url="https://shop.test/p/1", name="A"), "shop.test", now="t1")
    summary = RunSummary(site_key="shop", ok=2, written=2, visited=2)

    site_dir = export_snapshot(store.values(), tmp_path, "shop", summary)

    products = json.loads((site_dir / "products.json").read_text(encoding="utf-8"))
    assert [p["name"] for p in products] == ["A", "B"]
    assert json.loads((site_dir / "summary.json").read_text(encoding="utf-8"))["ok"] == 2


def test_export_only_touched(tmp_path):
    store = {}
    upsert(store, Product(url="https://shop.test/p/1"), "shop.test", now="t1")
    upsert(store, Product(url="https://shop.test/p/2"), "shop.test", now="t1")
    site_dir = export_snapshot(store.values(), tmp_path, "shop", only_ids={"shop.test|https://shop.test/p/2"})
    products = json.loads((site_dir / "products.json").read_text(encoding="utf-8"))
    assert [p["id"] for p in products] == ["shop.test|https://shop.test/p/2"]
    assert not (site_dir / "summary.json").exists()


def test_registry():
    assert get_adapter("apotea").base_host == "www.apotea.se"
    assert "_template" not in sites_in_category("all")
    assert sites_in_category("pharmacy") == ["apotea", "kronans"]
    with pytest.raises(ConfigurationError):
        get_adapter("nope")
    with pytest.raises(ConfigurationError):
        sites_in_category("nope")


def test_invalid_product_pattern_is_a_configuration_error():
    class Broken(SiteAdapter):
        key = "broken"
        base_host = "broken.test"
        discovery = DiscoveryConfig(product_url_pattern="([unclosed")

    with pytest.raises(ConfigurationError):
        Broken()


def test_resolve_sites():
    assert main.resolve_sites([]) == list(DEFAULT_SITES)
    assert main.resolve_sites(["pharmacy", "apotea"]) == ["apotea", "kronans"]
    assert main.resolve_sites(["kronans"]) == ["kronans"]


def test_partial_results_file(tmp_path):
    path = tmp_path / "runs.json"
    main.write_partial_results(str(path), "apotea", RunSummary(site_key="apotea", ok=3))
    main.write_partial_results(str(path), "kronans", RunSummary(site_key="kronans", fails=1))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["apotea"]["ok"] == 3 and data["kronans"]["fails"] == 1


def test_unknown_site_fails_in_its_own_worker(tmp_path):
    cfg = RunConfig(db_path=str(tmp_path / "data.sqlite"), out_dir=str(tmp_path / "out"))
    with pytest.raises(ConfigurationError):
        crawl_site_sync("nope", cfg)

    manager = CrawlerManager(["nope"], cfg, max_workers=1)
    manager.run_crawler()
    assert manager.get_results() == {}
    assert "nope" in manager.errors
