import json
import logging
import os
import sys

from dotenv import load_dotenv

from catalog_crawler.adapters.registry import DEFAULT_SITES, SITE_CATEGORIES, sites_in_category
from catalog_crawler.config import RunConfig
from catalog_crawler.crawler_manager import CrawlerManager
from catalog_crawler.models import RunSummary

RUNS_FILE = "runs.json"


def setup_logging():
    """
    Configure Python's built-in logging with a basic format to stdout.
    The level comes from LOG_LEVEL (default INFO).
    """
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="[%(levelname)s] %(name)s - %(message)s"
    )


def resolve_sites(args: list) -> list:
    """
    Expand command line arguments into site keys. An argument is either a
    site key or a category name ("all" for every real site).
    """
    if not args:
        return list(DEFAULT_SITES)
    sites = []
    for arg in args:
        if arg == "all" or arg in SITE_CATEGORIES:
            sites.extend(sites_in_category(arg))
        else:
            sites.append(arg)
    return list(dict.fromkeys(sites))


def read_existing_json(filepath: str) -> dict:
    """
    Read an existing JSON file if it exists, or return an empty dict.
    """
    if os.path.isfile(filepath):
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            return {}
    return {}


def write_partial_results(filepath: str, site_key: str, summary: RunSummary):
    """
    Record one finished site's summary in the runs file as soon as it is known.
    """
    existing_data = read_existing_json(filepath)
    existing_data[site_key] = summary.model_dump(mode="json")

    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(existing_data, f, indent=4)


def main():
    """
    Entry point.
    Usage:
        python main.py apotea kronans ...
        python main.py pharmacy
    If no sites are provided, the default list is used.
    """
    load_dotenv()
    setup_logging()
    logger = logging.getLogger(__name__)

    run_config = RunConfig.from_env()
    sites = resolve_sites(sys.argv[1:])
    logger.info("Script started with sites: %s (mode=%s)", sites, run_config.run_mode)

    os.makedirs(run_config.out_dir, exist_ok=True)
    runs_file = os.path.join(run_config.out_dir, RUNS_FILE)
    with open(runs_file, "w", encoding="utf-8") as f:
        json.dump({}, f)
    logger.info("Initialized empty runs file: %s", runs_file)

    manager = CrawlerManager(site_keys=sites, run_config=run_config, max_workers=min(4, len(sites)) or 1)
    manager.run_crawler(on_result=lambda key, summary: write_partial_results(runs_file, key, summary))

    logger.info("All sites have been crawled. Final results:")
    for key, summary in manager.get_results().items():
        logger.info("- %s", summary.log_line())
    for key, error in manager.errors.items():
        logger.error("- %s failed: %s", key, error)

    return 1 if manager.errors else 0


if __name__ == "__main__":
    sys.exit(main())
