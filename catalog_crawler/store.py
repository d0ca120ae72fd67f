"""
Product identity, dedup and merge.

Records are keyed "<host>|<ean>" when the product carries a valid GTIN and
"<host>|<normalized url>" otherwise. The key is computed when a record is
first created and never rewritten afterwards.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from .config import BATCH_SIZE, TIME_ZONE
from .errors import PersistenceError
from .gtin import is_valid_gtin
from .models import HISTORY_FIELDS, TRACKED_FIELDS, HistoryEntry, Product, ProductRecord
from .urls import normalize_url_key

logger = logging.getLogger(__name__)

# Excluded when deciding whether a merge changed anything.
_VOLATILE_FIELDS = {"history", "last_crawled"}


def zoned_now_iso(tz: str = TIME_ZONE, now: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp with offset in the given zone, e.g. 2025-09-02T10:42:05+02:00."""
    moment = now or datetime.now(tz=timezone.utc)
    return moment.astimezone(ZoneInfo(tz)).isoformat(timespec="seconds")


def id_for(product: Product, site_host: str) -> str:
    if product.ean and is_valid_gtin(product.ean.strip()):
        return f"{site_host}|{product.ean.strip()}"
    return f"{site_host}|{normalize_url_key(product.url)}"


@dataclass
class UpsertResult:
    record: ProductRecord
    changed: bool
    diff: Dict[str, object] = field(default_factory=dict)
    created: bool = False


def upsert(store: Dict[str, ProductRecord], incoming: Product, site_host: str,
           lastmod: Optional[str] = None, track_history: bool = False,
           now: Optional[str] = None, history_fields=HISTORY_FIELDS) -> UpsertResult:
    """
    Insert or merge `incoming` into `store` (mutated in place).

    Stored values are only replaced by present, different incoming values.
    last_crawled always advances; last_updated only when the record changed.
    History growth alone is not a change.
    """
    record_id = id_for(incoming, site_host)
    now = now or zoned_now_iso()
    key_url = normalize_url_key(incoming.url)
    existing = store.get(record_id)

    if existing is None:
        record = ProductRecord(
            **incoming.model_dump(),
            id=record_id,
            first_seen=now,
            last_updated=now,
            last_crawled=now,
            source_urls=[key_url],
            last_mod_by_url={key_url: lastmod} if lastmod else {},
            history=[] if track_history else None,
        )
        store[record_id] = record
        return UpsertResult(record=record, changed=True, created=True)

    merged = existing.model_copy(deep=True)
    if key_url not in merged.source_urls:
        merged.source_urls.append(key_url)
    if lastmod:
        merged.last_mod_by_url[key_url] = lastmod

    diff = {}
    for name in TRACKED_FIELDS:
        value = getattr(incoming, name)
        if value is not None and value != getattr(merged, name):
            setattr(merged, name, value)
            diff[name] = value

    if track_history:
        tracked = {k: v for k, v in diff.items() if k in history_fields}
        if tracked:
            if merged.history is None:
                merged.history = []
            merged.history.append(HistoryEntry(timestamp=now, changed_fields=tracked))

    changed = (existing.model_dump(exclude=_VOLATILE_FIELDS)
               != merged.model_dump(exclude=_VOLATILE_FIELDS))
    merged.last_crawled = now
    if changed:
        merged.last_updated = now
    store[record_id] = merged
    return UpsertResult(record=merged, changed=changed, diff=diff)


class ProductStore:
    """In-memory product map for one site, owned by one run."""

    def __init__(self, site_host: str, records: Optional[Dict[str, ProductRecord]] = None,
                 track_history: bool = False, clock: Callable[[], str] = zoned_now_iso):
        self.site_host = site_host
        self.track_history = track_history
        self.clock = clock
        self._records: Dict[str, ProductRecord] = dict(records or {})
        self.touched_ids: Set[str] = set()

    def __len__(self):
        return len(self._records)

    def __contains__(self, record_id):
        return record_id in self._records

    def get(self, record_id: str) -> Optional[ProductRecord]:
        return self._records.get(record_id)

    def records(self, ids: Optional[Iterable[str]] = None) -> List[ProductRecord]:
        if ids is None:
            return list(self._records.values())
        return [self._records[i] for i in ids if i in self._records]

    def upsert(self, incoming: Product, lastmod: Optional[str] = None) -> UpsertResult:
        result = upsert(self._records, incoming, self.site_host, lastmod=lastmod,
                        track_history=self.track_history, now=self.clock())
        self.touched_ids.add(result.record.id)
        return result


@dataclass
class MergeOutcome:
    record: ProductRecord
    changed: bool
    price_changed: bool


_STOP = object()


class MergeWriter:
    """
    Single writer for a ProductStore.

    Workers submit extracted products; one task applies them in arrival order,
    so two URLs resolving to the same id are merged strictly one after the
    other. The same task flushes dirty records every `batch_size` applied
    upserts and once more on close. A flush failure is raised as
    PersistenceError to the submitter and to every later submit.
    """

    def __init__(self, store: ProductStore,
                 flush: Callable[[List[ProductRecord]], Awaitable[None]],
                 batch_size: int = BATCH_SIZE,
                 pre_run_prices: Optional[Dict[str, Optional[float]]] = None):
        self.store = store
        self._flush_records = flush
        self.batch_size = max(1, batch_size)
        self.pre_run_prices = pre_run_prices or {}
        self.written_ids: Set[str] = set()
        self.price_updated_ids: Set[str] = set()
        self._dirty: Dict[str, None] = {}
        self._since_flush = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._error: Optional[PersistenceError] = None

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def submit(self, product: Product, lastmod: Optional[str] = None) -> MergeOutcome:
        if self._error is not None:
            raise self._error
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((product, lastmod, future))
        return await future

    async def close(self, flush: bool = True):
        if self._task is not None:
            await self._queue.put(_STOP)
            await self._task
            self._task = None
        if flush and self._error is None:
            await self.flush()

    async def flush(self):
        if not self._dirty:
            return
        records = self.store.records(self._dirty)
        try:
            await self._flush_records(records)
        except PersistenceError as e:
            self._error = e
            raise
        except Exception as e:
            self._error = PersistenceError(f"flush of {len(records)} record(s) failed: {e}")
            raise self._error from e
        logger.debug(f"[MergeWriter] Flushed {len(records)} record(s)")
        self.written_ids.update(self._dirty)
        self._dirty.clear()
        self._since_flush = 0

    async def _run(self):
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            product, lastmod, future = item
            if future.done():
                # submitter was cancelled
                continue
            if self._error is not None:
                future.set_exception(self._error)
                continue
            try:
                outcome = self._apply(product, lastmod)
                if self._since_flush >= self.batch_size:
                    await self.flush()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
                continue
            if not future.done():
                future.set_result(outcome)

    def _apply(self, product: Product, lastmod: Optional[str]) -> MergeOutcome:
        result = self.store.upsert(product, lastmod)
        record = result.record
        previous = self.pre_run_prices.get(record.id)
        price_changed = (
            record.id in self.pre_run_prices
            and previous is not None
            and record.price is not None
            and record.price != previous
        )
        if price_changed:
            self.price_updated_ids.add(record.id)
        self._dirty[record.id] = None
        self._since_flush += 1
        return MergeOutcome(record=record, changed=result.changed, price_changed=price_changed)
