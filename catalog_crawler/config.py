"""
Global configuration settings for the catalog crawler.

Module-level constants are defaults. Everything that varies per run lives in
RunConfig, built once (usually from the environment) and passed explicitly to
discovery and the runner.
"""
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError

# Output locations
OUTPUT_DIR = "out"
DB_PATH = "state/data.sqlite"

# Timestamps on product records are written in this zone.
TIME_ZONE = "Europe/Stockholm"

# Execution
BATCH_SIZE = 50
MAX_CONCURRENCY = 3
COOLDOWN_THRESHOLD = 5
PROGRESS_EVERY = 100
# After a shutdown signal, in-flight pages get this long before the run is cancelled.
SHUTDOWN_GRACE_SECONDS = 60

# Discovery
DISCOVERY_ATTEMPTS = 2
DISCOVERY_BACKOFF_MS = 2000
DISCOVERY_FETCH_RETRIES = 4
DISCOVERY_FETCH_BASE_DELAY_MS = 500
JITTER_MAX_MS = 250

# Timeout for each sitemap HTTP request (in seconds).
REQUEST_TIMEOUT = 30

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/xml,text/xml,application/xhtml+xml;q=0.9,*/*;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "Referer": "https://www.google.com/",
}

RUN_MODES = ("full", "delta", "refresh")

_TRUE_VALUES = ("1", "true", "yes", "on")


def env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def env_int(value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value.strip(), 10)
    except ValueError:
        return default


def env_list(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated value, trimming items and dropping empties."""
    if not value:
        return ()
    return tuple(s.strip() for s in value.split(",") if s.strip())


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable settings for one crawl run.

    A site-specific tweak (for example extra sitemaps on a discovery retry) is
    made with dataclasses.replace / with_extra_sitemaps, never by mutating
    process-wide state.
    """
    run_mode: str = "delta"
    products_limit: int = 0
    progress_every: int = PROGRESS_EVERY
    delta_grace_seconds: int = 120
    refresh_ttl_days: int = 30
    seed_file: str = ""
    seed_urls: Tuple[str, ...] = ()
    seed_only: bool = False
    sitemap_override: Tuple[str, ...] = ()
    extra_sitemap_urls: Tuple[str, ...] = ()
    snapshot_only_touched: bool = False
    discovery_attempts: int = DISCOVERY_ATTEMPTS
    discovery_backoff_ms: int = DISCOVERY_BACKOFF_MS
    batch_size: int = BATCH_SIZE
    db_path: str = DB_PATH
    out_dir: str = OUTPUT_DIR
    pdp_log: bool = False
    track_history: bool = True

    def __post_init__(self):
        if self.run_mode not in RUN_MODES:
            raise ConfigurationError(
                f"Unknown run mode {self.run_mode!r}, expected one of {', '.join(RUN_MODES)}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RunConfig":
        env = os.environ if environ is None else environ
        return cls(
            run_mode=(env.get("RUN_MODE") or "delta").strip().lower(),
            products_limit=env_int(env.get("PRODUCTS_LIMIT"), 0),
            progress_every=max(0, env_int(env.get("PROGRESS_EVERY"), PROGRESS_EVERY)),
            delta_grace_seconds=env_int(env.get("DELTA_GRACE_SECONDS"), 120),
            refresh_ttl_days=env_int(env.get("REFRESH_TTL_DAYS"), 30),
            seed_file=(env.get("SEED_FILE") or "").strip(),
            seed_urls=env_list(env.get("SEED_URLS")),
            seed_only=env_bool(env.get("SEED_ONLY")),
            sitemap_override=env_list(env.get("SITEMAP_OVERRIDE")),
            extra_sitemap_urls=env_list(env.get("EXTRA_SITEMAP_URLS")),
            snapshot_only_touched=env_bool(env.get("SNAPSHOT_ONLY_TOUCHED")),
            discovery_attempts=max(1, env_int(env.get("DISCOVERY_ATTEMPTS"), DISCOVERY_ATTEMPTS)),
            discovery_backoff_ms=max(0, env_int(env.get("DISCOVERY_BACKOFF_MS"), DISCOVERY_BACKOFF_MS)),
            batch_size=max(1, env_int(env.get("BATCH_SIZE"), BATCH_SIZE)),
            db_path=env.get("DB_PATH") or DB_PATH,
            out_dir=env.get("OUT_DIR_BASE") or OUTPUT_DIR,
            pdp_log=env_bool(env.get("PDP_LOG")),
            track_history=env_bool(env.get("TRACK_HISTORY"), True),
        )

    def with_extra_sitemaps(self, urls) -> "RunConfig":
        merged = tuple(dict.fromkeys(tuple(self.extra_sitemap_urls) + tuple(urls)))
        return replace(self, extra_sitemap_urls=merged)

    def read_seeds(self) -> Tuple[str, ...]:
        """
        Seed URLs from seed_file (one per line) followed by seed_urls.
        Raises OSError if seed_file cannot be read.
        """
        seeds = []
        if self.seed_file:
            with open(self.seed_file, "r", encoding="utf-8") as f:
                seeds.extend(line.strip() for line in f if line.strip())
        seeds.extend(self.seed_urls)
        return tuple(dict.fromkeys(seeds))
