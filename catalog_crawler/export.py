"""Point-in-time JSON export of a site's records and run summary."""
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from .models import ProductRecord, RunSummary

logger = logging.getLogger(__name__)

PRODUCTS_FILE = "products.json"
SUMMARY_FILE = "summary.json"


def export_snapshot(records: Iterable[ProductRecord], out_dir, site_key: str,
                    summary: Optional[RunSummary] = None,
                    only_ids: Optional[Iterable[str]] = None) -> Path:
    """
    Write <out_dir>/<site_key>/products.json (sorted by id) and, when given,
    summary.json next to it.

    :param only_ids: restrict the export to these record ids (the ones a run touched).
    :return: the site's export directory.
    """
    site_dir = Path(out_dir) / site_key
    site_dir.mkdir(parents=True, exist_ok=True)

    records = list(records)
    if only_ids is not None:
        wanted = set(only_ids)
        records = [r for r in records if r.id in wanted]
    records.sort(key=lambda r: r.id)

    with open(site_dir / PRODUCTS_FILE, "w", encoding="utf-8") as f:
        json.dump([r.model_dump(mode="json") for r in records], f, indent=4, ensure_ascii=False)

    if summary is not None:
        with open(site_dir / SUMMARY_FILE, "w", encoding="utf-8") as f:
            json.dump(summary.model_dump(mode="json"), f, indent=4)

    logger.info(f"[export] Wrote {len(records)} record(s) to {site_dir / PRODUCTS_FILE}")
    return site_dir
