import asyncio
import logging
import multiprocessing
import signal
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from .adapters.registry import get_adapter
from .config import SHUTDOWN_GRACE_SECONDS, RunConfig
from .errors import CrawlError
from .export import export_snapshot
from .fetcher import TextFetcher
from .models import RunSummary
from .runner import SiteRunner
from .storage import SqliteStorage
from .transport import HttpTransport

logger = logging.getLogger(__name__)


def _install_stop_handlers(runner: SiteRunner, main_task: asyncio.Task):
    """
    First SIGINT/SIGTERM stops admitting pages and lets in-flight ones finish;
    a second signal, or SHUTDOWN_GRACE_SECONDS later, cancels the run.
    """
    loop = asyncio.get_running_loop()

    def _on_signal(signame):
        if runner.stopping:
            logger.warning(f"[crawl_site] {signame} again, cancelling {runner.adapter.key}")
            main_task.cancel()
            return
        logger.warning(f"[crawl_site] {signame} received")
        runner.request_stop()
        loop.call_later(SHUTDOWN_GRACE_SECONDS, main_task.cancel)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError, ValueError):
            # not the main thread, or a platform without loop signal support
            logger.debug(f"[crawl_site] No handler installed for {sig.name}")


async def crawl_site(site_key: str, run_config: RunConfig) -> RunSummary:
    """Discover, crawl and export one site."""
    adapter = get_adapter(site_key)
    storage = SqliteStorage(run_config.db_path)

    async with TextFetcher() as fetch_text, HttpTransport() as transport:
        runner = SiteRunner(adapter, run_config, transport, storage, fetch_text=fetch_text)
        _install_stop_handlers(runner, asyncio.current_task())
        summary = await runner.run()

    if runner.store is not None:
        records = runner.store.records()
        only_ids = runner.store.touched_ids if run_config.snapshot_only_touched else None
    else:
        records = await asyncio.to_thread(storage.read_by_host, adapter.base_host)
        only_ids = set() if run_config.snapshot_only_touched else None
    export_snapshot(records, run_config.out_dir, site_key, summary, only_ids=only_ids)
    return summary


def crawl_site_sync(site_key: str, run_config: RunConfig):
    """
    Runs crawl_site for a single site in its own event loop
    (each worker process gets a fresh one).

    :return: (site_key, RunSummary)
    """
    logger.info(f"[crawl_site_sync] Starting site: {site_key}")
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(crawl_site(site_key, run_config))
    except asyncio.CancelledError:
        raise CrawlError(f"crawl of {site_key} was cancelled during shutdown") from None
    finally:
        loop.close()

    logger.info(f"[crawl_site_sync] Finished site: {site_key} (ok={summary.ok}, fails={summary.fails})")
    return site_key, summary


class CrawlerManager:
    """
    Crawls several sites in parallel using multiprocessing, one process per site.
    """

    def __init__(self, site_keys: List[str], run_config: RunConfig, max_workers: int = None):
        """
        :param site_keys: adapter keys to crawl.
        :param max_workers: Number of processes (defaults to CPU count).
        """
        self.site_keys = site_keys
        self.run_config = run_config
        self.results: Dict[str, RunSummary] = {}
        self.errors: Dict[str, str] = {}
        self.max_workers = max_workers or multiprocessing.cpu_count()

        logger.info(f"[CrawlerManager] Initialized with {len(site_keys)} site(s), max_workers={self.max_workers}")

    def run_crawler(self, on_result: Optional[Callable[[str, RunSummary], None]] = None):
        """
        Crawls all sites in parallel using a ProcessPoolExecutor.
        on_result is called in this process as soon as each site finishes.
        """
        logger.info("[CrawlerManager] run_crawler started")
        with ProcessPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_site = {
                executor.submit(crawl_site_sync, site_key, self.run_config): site_key
                for site_key in self.site_keys
            }

            for future in as_completed(future_to_site):
                site_key = future_to_site[future]
                try:
                    key, summary = future.result()
                except Exception as exc:
                    self.errors[site_key] = str(exc)
                    logger.error(f"[CrawlerManager] {site_key} raised an exception: {exc}")
                    continue
                self.results[key] = summary
                logger.info(f"[CrawlerManager] Site completed: {summary.log_line()}")
                if on_result is not None:
                    on_result(key, summary)

        logger.info("[CrawlerManager] run_crawler finished")

    def get_results(self) -> Dict[str, RunSummary]:
        """
        Return the aggregated {site_key: RunSummary} after all crawls complete.
        """
        return self.results
