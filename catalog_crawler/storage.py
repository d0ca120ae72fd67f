"""SQLite persistence for product records and the per-URL snapshot index."""
import json
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from .errors import PersistenceError
from .models import HistoryEntry, ProductRecord
from .urls import host_of

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS stores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    host TEXT NOT NULL UNIQUE,
    site_key TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    site_host TEXT NOT NULL,
    store_id INTEGER,
    ean TEXT,
    url TEXT NOT NULL,
    name TEXT,
    price REAL,
    original_price REAL,
    currency TEXT,
    image_url TEXT,
    brand TEXT,
    in_stock INTEGER,
    first_seen TEXT NOT NULL,
    last_updated TEXT NOT NULL,
    last_crawled TEXT,
    last_mod_by_url TEXT NOT NULL DEFAULT '{}',
    FOREIGN KEY (store_id) REFERENCES stores(id)
);

CREATE TABLE IF NOT EXISTS product_sources (
    id TEXT NOT NULL,
    url TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (id, url)
);

CREATE TABLE IF NOT EXISTS product_history (
    id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    ts TEXT NOT NULL,
    changes_json TEXT NOT NULL,
    PRIMARY KEY (id, seq)
);

CREATE TABLE IF NOT EXISTS snapshot_index (
    url TEXT PRIMARY KEY,
    lastmod TEXT,
    last_crawled_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_products_site_url ON products(site_host, url);
CREATE INDEX IF NOT EXISTS ix_products_site_ean ON products(site_host, ean) WHERE ean IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_products_last_crawled ON products(last_crawled);
CREATE INDEX IF NOT EXISTS idx_sources_url ON product_sources(url);
"""

_UPSERT_PRODUCT = """
INSERT INTO products (
    id, site_host, store_id, ean, url, name, price, original_price, currency,
    image_url, brand, in_stock, first_seen, last_updated, last_crawled, last_mod_by_url
) VALUES (
    :id, :site_host, :store_id, :ean, :url, :name, :price, :original_price, :currency,
    :image_url, :brand, :in_stock, :first_seen, :last_updated, :last_crawled, :last_mod_by_url
)
ON CONFLICT(id) DO UPDATE SET
    site_host=excluded.site_host,
    store_id=COALESCE(excluded.store_id, products.store_id),
    ean=excluded.ean,
    url=excluded.url,
    name=excluded.name,
    price=excluded.price,
    original_price=excluded.original_price,
    currency=excluded.currency,
    image_url=excluded.image_url,
    brand=excluded.brand,
    in_stock=excluded.in_stock,
    last_updated=excluded.last_updated,
    last_crawled=excluded.last_crawled,
    last_mod_by_url=excluded.last_mod_by_url
"""

SnapshotIndex = Tuple[Dict[str, str], Dict[str, str]]


def site_host_of(record: ProductRecord) -> str:
    """The host half of a record id; ids are always "<host>|<key>"."""
    host, sep, _ = record.id.partition("|")
    return host if sep else host_of(record.url)


class SqliteStorage:
    """
    Durable keyed storage for ProductRecord. Every write_* call is one
    transaction: a batch is either stored completely or not at all.
    """

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with closing(self._connect()) as conn:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"could not initialise {self.db_path}: {e}") from e

    @staticmethod
    def _ensure_store(conn: sqlite3.Connection, host: str, site_key: Optional[str]) -> int:
        conn.execute(
            "INSERT INTO stores(host, site_key, active) VALUES(?, ?, 1) "
            "ON CONFLICT(host) DO UPDATE SET site_key=COALESCE(excluded.site_key, stores.site_key)",
            (host, site_key),
        )
        row = conn.execute("SELECT id FROM stores WHERE host = ?", (host,)).fetchone()
        return int(row["id"])

    def write_records(self, records: Iterable[ProductRecord], site_key: Optional[str] = None) -> int:
        """Upsert records by id in a single transaction. Returns the number written."""
        records = list(records)
        if not records:
            return 0
        try:
            with closing(self._connect()) as conn:
                with conn:
                    store_ids: Dict[str, int] = {}
                    for rec in records:
                        host = site_host_of(rec)
                        if host not in store_ids:
                            store_ids[host] = self._ensure_store(conn, host, site_key)
                        self._write_record(conn, rec, host, store_ids[host])
        except sqlite3.Error as e:
            raise PersistenceError(f"writing {len(records)} record(s) to {self.db_path} failed: {e}") from e
        logger.debug(f"[SqliteStorage] Wrote {len(records)} record(s)")
        return len(records)

    @staticmethod
    def _write_record(conn: sqlite3.Connection, rec: ProductRecord, host: str, store_id: int):
        conn.execute(_UPSERT_PRODUCT, {
            "id": rec.id,
            "site_host": host,
            "store_id": store_id,
            "ean": rec.ean,
            "url": rec.url,
            "name": rec.name,
            "price": rec.price,
            "original_price": rec.original_price,
            "currency": rec.currency,
            "image_url": rec.image_url,
            "brand": rec.brand,
            "in_stock": None if rec.in_stock is None else int(rec.in_stock),
            "first_seen": rec.first_seen,
            "last_updated": rec.last_updated,
            "last_crawled": rec.last_crawled,
            "last_mod_by_url": json.dumps(rec.last_mod_by_url, sort_keys=True),
        })
        conn.executemany(
            "INSERT INTO product_sources(id, url, position) VALUES(?, ?, ?) "
            "ON CONFLICT(id, url) DO NOTHING",
            [(rec.id, url, pos) for pos, url in enumerate(rec.source_urls)],
        )
        # history is append-only; only entries past what is stored get inserted
        if rec.history:
            stored = conn.execute(
                "SELECT COUNT(*) AS n FROM product_history WHERE id = ?", (rec.id,)
            ).fetchone()["n"]
            conn.executemany(
                "INSERT INTO product_history(id, seq, ts, changes_json) VALUES(?, ?, ?, ?)",
                [(rec.id, seq, entry.timestamp, json.dumps(entry.changed_fields, sort_keys=True))
                 for seq, entry in enumerate(rec.history) if seq >= stored],
            )

    def _read(self, where: str = "", params: tuple = ()) -> Dict[str, ProductRecord]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(f"SELECT * FROM products {where}", params).fetchall()
                sources: Dict[str, list] = {}
                for s in conn.execute(
                    f"SELECT id, url FROM product_sources WHERE id IN (SELECT id FROM products {where}) "
                    "ORDER BY id, position", params,
                ):
                    sources.setdefault(s["id"], []).append(s["url"])
                history: Dict[str, list] = {}
                for h in conn.execute(
                    f"SELECT id, ts, changes_json FROM product_history WHERE id IN (SELECT id FROM products {where}) "
                    "ORDER BY id, seq", params,
                ):
                    history.setdefault(h["id"], []).append(
                        HistoryEntry(timestamp=h["ts"], changed_fields=json.loads(h["changes_json"]))
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"reading from {self.db_path} failed: {e}") from e

        out: Dict[str, ProductRecord] = {}
        for r in rows:
            out[r["id"]] = ProductRecord(
                id=r["id"],
                url=r["url"],
                name=r["name"],
                price=r["price"],
                original_price=r["original_price"],
                currency=r["currency"],
                image_url=r["image_url"],
                ean=r["ean"],
                brand=r["brand"],
                in_stock=None if r["in_stock"] is None else bool(r["in_stock"]),
                first_seen=r["first_seen"],
                last_updated=r["last_updated"],
                last_crawled=r["last_crawled"] or r["last_updated"],
                source_urls=sources.get(r["id"], [r["url"]]),
                last_mod_by_url=json.loads(r["last_mod_by_url"] or "{}"),
                history=history.get(r["id"]),
            )
        return out

    def read_by_host(self, site_host: str) -> Dict[str, ProductRecord]:
        return self._read("WHERE site_host = ?", (site_host,))

    def read_all(self) -> Dict[str, ProductRecord]:
        """Global view across every site host."""
        return self._read()

    def read_snapshot_index(self) -> SnapshotIndex:
        """(lastmod_by_url, last_crawled_at_by_url)"""
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute("SELECT url, lastmod, last_crawled_at FROM snapshot_index").fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"reading snapshot index failed: {e}") from e
        lastmod_by_url = {r["url"]: r["lastmod"] for r in rows if r["lastmod"]}
        crawled_by_url = {r["url"]: r["last_crawled_at"] for r in rows if r["last_crawled_at"]}
        return lastmod_by_url, crawled_by_url

    def write_snapshot_index(self, lastmod_by_url: Dict[str, str],
                             last_crawled_at_by_url: Dict[str, str]) -> None:
        urls = set(lastmod_by_url) | set(last_crawled_at_by_url)
        if not urls:
            return
        try:
            with closing(self._connect()) as conn:
                with conn:
                    conn.executemany(
                        "INSERT INTO snapshot_index (url, lastmod, last_crawled_at) VALUES (?, ?, ?) "
                        "ON CONFLICT(url) DO UPDATE SET "
                        "lastmod=COALESCE(excluded.lastmod, snapshot_index.lastmod), "
                        "last_crawled_at=COALESCE(excluded.last_crawled_at, snapshot_index.last_crawled_at)",
                        [(u, lastmod_by_url.get(u), last_crawled_at_by_url.get(u)) for u in sorted(urls)],
                    )
        except sqlite3.Error as e:
            raise PersistenceError(f"writing snapshot index failed: {e}") from e
