import asyncio
import logging
import random
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from .adapters.base import Capability, SiteAdapter
from .config import JITTER_MAX_MS, RunConfig
from .discovery import discover_with_attempts
from .errors import CrawlError, FetchError, PersistenceError
from .extraction import extract_standard
from .models import Product, RunSummary
from .pacing import Pacer, error_budget, pdp_params, retry_params
from .store import MergeWriter, ProductStore, zoned_now_iso

logger = logging.getLogger(__name__)

# fewer outcomes than this in the window are too few to judge an error rate
MIN_ERROR_RATE_SAMPLES = 10


def format_duration(seconds: float) -> str:
    """1h30m45s style; minutes and hours only appear once they are non-zero."""
    total = max(0, int(round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime; naive values are taken as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def select_urls(urls: Sequence[str], run_config: RunConfig,
                sitemap_lastmods: Dict[str, str],
                prior_lastmods: Dict[str, str],
                last_crawled: Dict[str, str],
                now: Optional[datetime] = None) -> List[str]:
    """
    Pick the URLs a run should visit.

    full     every URL
    delta    never crawled, no sitemap lastmod to compare, or the lastmod moved
             on (a lastmod within delta_grace_seconds before the last crawl
             also counts)
    refresh  never crawled, or last crawled more than refresh_ttl_days ago
    """
    if run_config.run_mode == "full":
        return list(urls)

    now = now or datetime.now(tz=timezone.utc)
    grace = timedelta(seconds=run_config.delta_grace_seconds)
    ttl = timedelta(days=run_config.refresh_ttl_days)
    selected = []
    for url in urls:
        crawled_at = parse_iso(last_crawled.get(url))
        if crawled_at is None:
            selected.append(url)
            continue
        if run_config.run_mode == "refresh":
            if now - crawled_at > ttl:
                selected.append(url)
            continue
        lastmod = sitemap_lastmods.get(url)
        if not lastmod:
            # nothing says the page is unchanged
            selected.append(url)
            continue
        if lastmod != prior_lastmods.get(url):
            modified = parse_iso(lastmod)
            if modified is None or modified > crawled_at - grace:
                selected.append(url)
    return selected


class SiteRunner:
    """
    Crawls the product pages of one site.

    Pages are fetched through `transport` with at most pdp concurrency in
    flight, paced by a Pacer and guarded by a consecutive-error circuit
    breaker. Extracted products go through a MergeWriter, which flushes to
    `storage` in batches. A failure on one URL is counted and logged; a
    storage failure stops the run.
    """

    def __init__(self, adapter: SiteAdapter, run_config: RunConfig, transport, storage,
                 fetch_text=None, clock=time.monotonic, sleep=asyncio.sleep,
                 rng: Optional[random.Random] = None):
        """
        :param transport: object with `async fetch(url, timeout_ms, wait_until) -> PageResponse`
        :param storage: SqliteStorage or anything with the same read/write methods
        :param fetch_text: `async (url) -> str` used for sitemap discovery
        """
        self.adapter = adapter
        self.run_config = run_config
        self.transport = transport
        self.storage = storage
        self.fetch_text = fetch_text
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()

        self.max_retries, self.retry_base_ms = retry_params(adapter.pacing)
        self.budget = error_budget(adapter.pacing)
        self.pdp = pdp_params(adapter.pacing)

        self.store: Optional[ProductStore] = None
        self.writer: Optional[MergeWriter] = None
        self.pacer: Optional[Pacer] = None
        self.sitemap_lastmods: Dict[str, str] = {}
        self.crawled_at_by_url: Dict[str, str] = {}

        self.ok = 0
        self.fails = 0
        self.visited = 0
        self.consecutive_errors = 0
        self._outcomes = deque()
        self._error_rate_high = False
        self._cooldown_until = 0.0
        self._total = 0
        self._started = 0.0
        self._stopping = False

    # ------------------------------------------------------------------
    # URL collection
    # ------------------------------------------------------------------

    def _normalize_seeds(self, seeds) -> List[str]:
        out = []
        for raw in seeds:
            try:
                out.append(self.adapter.normalize_url(raw))
            except ValueError:
                logger.warning(f"[SiteRunner] Ignoring invalid seed URL: {raw}")
        return out

    async def collect_urls(self) -> List[str]:
        """Seed URLs (file and list) ahead of discovered sitemap URLs, deduplicated."""
        try:
            seeds = self.run_config.read_seeds()
        except OSError as e:
            logger.warning(f"[SiteRunner] Could not read seed file {self.run_config.seed_file}: {e}")
            seeds = tuple(self.run_config.seed_urls)
        seeds = self._normalize_seeds(seeds)

        if self.run_config.seed_only:
            logger.info(f"[SiteRunner] {self.adapter.key}: seed-only run with {len(seeds)} URL(s)")
            return list(dict.fromkeys(seeds))

        if self.fetch_text is None:
            raise CrawlError("sitemap discovery needs a fetch_text callable")
        discovery = await discover_with_attempts(
            self.adapter, self.run_config, self.fetch_text,
            extra_sitemaps_on_retry=self.adapter.discovery.retry_sitemap_urls,
            sleep=self.sleep,
        )
        self.sitemap_lastmods = dict(discovery.lastmod_by_url)
        return list(dict.fromkeys(seeds + sorted(discovery.product_urls)))

    async def _plan(self, urls: Sequence[str]) -> List[str]:
        prior_lastmods, last_crawled = await asyncio.to_thread(self.storage.read_snapshot_index)
        selected = select_urls(urls, self.run_config, self.sitemap_lastmods, prior_lastmods, last_crawled)
        if self.run_config.products_limit > 0:
            selected = selected[:self.run_config.products_limit]
        logger.info(
            f"[SiteRunner] {self.adapter.key}: mode={self.run_config.run_mode} "
            f"candidates={len(urls)} selected={len(selected)}"
        )
        return selected

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self):
        """Stop admitting new pages. In-flight pages finish and are flushed."""
        if not self._stopping:
            logger.warning(f"[SiteRunner] {self.adapter.key}: stop requested, draining in-flight pages")
        self._stopping = True

    async def run(self, urls: Optional[Sequence[str]] = None) -> RunSummary:
        self._started = self.clock()
        if urls is None:
            urls = await self.collect_urls()
        else:
            urls = list(dict.fromkeys(self._normalize_seeds(urls)))
        urls = await self._plan(urls)
        self._total = len(urls)

        if not urls:
            summary = self._summary()
            logger.info(f"[SiteRunner] {summary.log_line()}")
            return summary

        existing = await asyncio.to_thread(self.storage.read_by_host, self.adapter.base_host)
        self.store = ProductStore(self.adapter.base_host, existing, track_history=self.run_config.track_history)
        self.writer = MergeWriter(
            self.store, self._flush, batch_size=self.run_config.batch_size,
            pre_run_prices={rid: rec.price for rid, rec in existing.items()},
        )
        self.pacer = Pacer(self.adapter.pacing, clock=self.clock, rng=self.rng)
        self.pacer.start()
        semaphore = asyncio.Semaphore(self.pdp["concurrency"])

        logger.info(
            f"[SiteRunner] {self.adapter.key}: crawling {self._total} URL(s) "
            f"concurrency={self.pdp['concurrency']} retries={self.max_retries}"
        )
        async with self.writer:
            tasks = [asyncio.create_task(self._process(url, semaphore)) for url in urls]
            try:
                await asyncio.gather(*tasks)
            except PersistenceError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        await asyncio.to_thread(
            self.storage.write_snapshot_index,
            {u: m for u, m in self.sitemap_lastmods.items() if u in self.crawled_at_by_url},
            self.crawled_at_by_url,
        )
        summary = self._summary()
        logger.info(f"[SiteRunner] {summary.log_line()}")
        return summary

    def _summary(self) -> RunSummary:
        return RunSummary(
            site_key=self.adapter.key,
            ok=self.ok,
            fails=self.fails,
            written=len(self.writer.written_ids) if self.writer else 0,
            visited=self.visited,
            price_updates=len(self.writer.price_updated_ids) if self.writer else 0,
            elapsed_seconds=self.clock() - self._started,
        )

    async def _flush(self, records):
        await asyncio.to_thread(self.storage.write_records, records, self.adapter.key)

    async def _admit(self) -> bool:
        """
        Wait until a new page may start. Once consecutive_errors reaches the
        threshold, every admission waits out one cooldown; the counter is
        reset so the next burst of failures starts a fresh one.
        """
        while True:
            if self._stopping:
                return False
            now = self.clock()
            if self.consecutive_errors >= self.budget["threshold"]:
                self._cooldown_until = now + self.budget["cooldown_sec"]
                logger.warning(
                    f"[SiteRunner] {self.adapter.key}: {self.consecutive_errors} consecutive errors, "
                    f"cooling down for {self.budget['cooldown_sec']}s"
                )
                self.consecutive_errors = 0
            wait = self._cooldown_until - now
            if wait <= 0:
                return True
            await self.sleep(wait)

    def _backoff_seconds(self, error: Exception, attempt: int) -> float:
        if isinstance(error, FetchError) and error.is_throttle and error.retry_after is not None:
            return error.retry_after
        jitter = self.rng.randint(0, JITTER_MAX_MS)
        return (self.retry_base_ms * (2 ** attempt) + jitter) / 1000

    async def _fetch_product(self, url: str) -> Product:
        await self.pacer.wait_turn(self.sleep)
        page = await self.transport.fetch(url, timeout_ms=self.pdp["timeout_ms"],
                                          wait_until=self.pdp["wait_until"])
        if not page.ok:
            raise FetchError(url, status=page.status, retry_after=page.retry_after)

        if self.adapter.has(Capability.CONSENT_HANDLER):
            try:
                await self.adapter.consent(page, self.transport)
            except Exception as e:
                logger.debug(f"[SiteRunner] Consent handling failed on {url}: {e}")

        if self.adapter.has(Capability.CUSTOM_EXTRACTOR):
            product = await self.adapter.custom_extract(page)
        else:
            product = extract_standard(self.adapter, page)

        update = {"url": url}
        if product.currency is None and self.adapter.default_currency:
            update["currency"] = self.adapter.default_currency
        return product.model_copy(update=update)

    async def _process(self, url: str, semaphore: asyncio.Semaphore):
        async with semaphore:
            if not await self._admit():
                return
            self.visited += 1

            product = None
            last_error: Optional[Exception] = None
            for attempt in range(self.max_retries + 1):
                try:
                    product = await self._fetch_product(url)
                    break
                except Exception as e:
                    # any per-page failure (network, status, extraction, adapter bug) is retried
                    last_error = e
                    if attempt < self.max_retries:
                        await self.sleep(self._backoff_seconds(e, attempt))

            if product is None:
                self.fails += 1
                self.consecutive_errors += 1
                self._track_error_rate(failed=True)
                logger.warning(
                    f"[SiteRunner] {self.adapter.key}: failed {url} after "
                    f"{self.max_retries + 1} attempt(s): {last_error}"
                )
                return

            outcome = await self.writer.submit(product, self.sitemap_lastmods.get(url))
            self.crawled_at_by_url[url] = zoned_now_iso()
            self.ok += 1
            self.consecutive_errors = 0
            self._track_error_rate(failed=False)
            if self.run_config.pdp_log:
                logger.debug(
                    f"[pdp] {url} id={outcome.record.id} price={outcome.record.price} "
                    f"changed={outcome.changed}"
                )
            self._maybe_report_progress()

    def _track_error_rate(self, failed: bool):
        """
        Keep outcomes from the last error_window seconds. Warn once the failure
        rate reaches `warn`; report recovery when it drops back to `good`.
        """
        now = self.clock()
        self._outcomes.append((now, failed))
        while self._outcomes and self._outcomes[0][0] < now - self.budget["window_sec"]:
            self._outcomes.popleft()
        if len(self._outcomes) < MIN_ERROR_RATE_SAMPLES:
            return
        rate = sum(1 for _, f in self._outcomes if f) / len(self._outcomes)
        if not self._error_rate_high and rate >= self.budget["warn"]:
            self._error_rate_high = True
            logger.warning(
                f"[SiteRunner] {self.adapter.key}: error rate {rate:.1%} over the last "
                f"{self.budget['window_sec']}s ({len(self._outcomes)} pages)"
            )
        elif self._error_rate_high and rate <= self.budget["good"]:
            self._error_rate_high = False
            logger.info(f"[SiteRunner] {self.adapter.key}: error rate back to {rate:.1%}")

    def _maybe_report_progress(self):
        every = self.run_config.progress_every
        if every <= 0 or self.ok % every != 0:
            return
        elapsed = self.clock() - self._started
        rate = self.ok / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self._total - self.visited)
        eta = format_duration(remaining / rate) if rate > 0 else "?"
        logger.info(
            f"[progress][{self.adapter.key}] {self.ok}/{self._total} | "
            f"elapsed={format_duration(elapsed)} | eta={eta} | "
            f"rate={rate:.2f}/s target={self.pacer.current_rate():.2f}/s"
        )
