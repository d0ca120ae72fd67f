import math
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .gtin import sanitize_ean

# Fields merged from an incoming extraction into a stored record.
TRACKED_FIELDS = (
    "name",
    "price",
    "original_price",
    "currency",
    "image_url",
    "ean",
    "brand",
    "in_stock",
)

# Subset of TRACKED_FIELDS that gets a history entry when it changes.
HISTORY_FIELDS = ("price", "original_price", "in_stock")


class Product(BaseModel):
    """One extraction result. Everything except url may be missing."""
    url: str                                # canonical/normalized product url
    name: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = None  # list price / "was" price
    currency: Optional[str] = None
    image_url: Optional[str] = None
    ean: Optional[str] = None               # GTIN-8/12/13/14
    brand: Optional[str] = None
    in_stock: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an absolute http(s) URL")
        return v

    @field_validator("price", "original_price")
    @classmethod
    def _finite(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not math.isfinite(v):
            raise ValueError("price must be a finite number")
        return v

    @field_validator("ean", mode="before")
    @classmethod
    def _clean_ean(cls, v):
        if v is None:
            return None
        return sanitize_ean(str(v))

    @field_validator("name", "brand", "currency", "image_url")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class HistoryEntry(BaseModel):
    timestamp: str
    changed_fields: Dict[str, object]


class ProductRecord(Product):
    """Persistent, deduplicated view of one product on one site."""
    id: str                 # "<host>|<ean>" or "<host>|<normalized url>"
    first_seen: str
    last_updated: str
    last_crawled: str
    source_urls: List[str] = Field(default_factory=list)
    last_mod_by_url: Dict[str, str] = Field(default_factory=dict)
    history: Optional[List[HistoryEntry]] = None


class SitemapEntry(BaseModel):
    loc: str
    lastmod: Optional[str] = None


class RunSummary(BaseModel):
    site_key: str
    ok: int = 0
    fails: int = 0
    written: int = 0
    visited: int = 0
    price_updates: int = 0
    elapsed_seconds: float = 0.0

    def log_line(self) -> str:
        return (
            f"done site={self.site_key} ok={self.ok} fails={self.fails} "
            f"wrote={self.written} visited={self.visited} "
            f"priceUpdates={self.price_updates} elapsedSec={self.elapsed_seconds:.2f}"
        )
