"""
Pacing controller: how fast a runner may navigate at a given point of a run.

Everything here is a pure function of a PacingConfig and the elapsed time,
except Pacer, which additionally remembers when the last navigation slot was
handed out.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from .config import COOLDOWN_THRESHOLD, MAX_CONCURRENCY
from .errors import ConfigurationError

WAIT_STRATEGIES = ("domcontentloaded", "load", "networkidle")


@dataclass(frozen=True)
class RampStep:
    t: float    # seconds since run start
    rps: float  # target requests per second from t onwards


@dataclass(frozen=True)
class PacingConfig:
    host_max_nav_rps: float = 1.0
    ramp: Tuple[RampStep, ...] = ()
    pdp_concurrency: int = 1
    pdp_timeout_ms: int = 30_000
    nav_wait_pdp: str = "domcontentloaded"
    goto_min_spacing_ms: int = 0
    min_delay_ms: int = 0
    max_delay_ms: int = 0
    fetch_retries: int = 3
    fetch_retry_base_ms: int = 800
    error_window: int = 600          # seconds
    error_rate_warn: float = 0.05
    error_rate_good: float = 0.02
    cooldown_seconds: float = 120
    cooldown_threshold: int = COOLDOWN_THRESHOLD

    def __post_init__(self):
        if self.nav_wait_pdp not in WAIT_STRATEGIES:
            raise ConfigurationError(f"Unknown wait strategy {self.nav_wait_pdp!r}")
        # keep the ramp sorted regardless of how it was written
        object.__setattr__(self, "ramp", tuple(sorted(self.ramp, key=lambda s: s.t)))


def parse_ramp_schedule(value: str) -> Tuple[RampStep, ...]:
    """
    Parse "0:1.0,180:1.5,900:2" into ramp steps sorted by time.
    Negative times clamp to 0 and rates below 0.1 clamp to 0.1.
    An empty schedule becomes a single 1 rps step at t=0.
    """
    steps = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            t_raw, rps_raw = part.split(":")
            t, rps = float(t_raw), float(rps_raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid ramp step {part!r}") from e
        steps.append(RampStep(t=max(0.0, t), rps=max(0.1, rps)))
    steps.sort(key=lambda s: s.t)
    return tuple(steps) or (RampStep(t=0.0, rps=1.0),)


def target_rate(config: Optional[PacingConfig], elapsed_seconds: float) -> float:
    """
    Rate of the last ramp step whose threshold has been reached, never above
    host_max_nav_rps. Before the first threshold the first step applies.
    """
    c = config or PacingConfig()
    if not c.ramp:
        return c.host_max_nav_rps

    rate = c.ramp[0].rps
    for step in c.ramp:
        if elapsed_seconds >= step.t:
            rate = step.rps
        else:
            break
    return min(rate, c.host_max_nav_rps)


def min_spacing_ms(config: Optional[PacingConfig]) -> int:
    return (config or PacingConfig()).goto_min_spacing_ms


def jitter_delay_ms(config: Optional[PacingConfig], rng: random.Random = None) -> int:
    """Uniform integer delay in [min_delay_ms, max_delay_ms]."""
    c = config or PacingConfig()
    low = c.min_delay_ms
    high = max(c.max_delay_ms, low)
    if high <= 0:
        return 0
    if high == low:
        return low
    return (rng or random).randint(low, high)


def next_navigation_delay_ms(config: Optional[PacingConfig], elapsed_seconds: float,
                             rng: random.Random = None) -> float:
    rps = target_rate(config, elapsed_seconds)
    base = 1000 / rps if rps > 0 else 1000
    return max(base, min_spacing_ms(config)) + jitter_delay_ms(config, rng)


def retry_params(config: Optional[PacingConfig]):
    c = config or PacingConfig()
    return max(0, int(c.fetch_retries)), max(0, int(c.fetch_retry_base_ms))


def error_budget(config: Optional[PacingConfig]) -> dict:
    c = config or PacingConfig()
    return {
        "window_sec": c.error_window,
        "warn": c.error_rate_warn,
        "good": c.error_rate_good,
        "cooldown_sec": c.cooldown_seconds,
        "threshold": c.cooldown_threshold,
    }


def pdp_params(config: Optional[PacingConfig]) -> dict:
    """Concurrency (capped at MAX_CONCURRENCY), timeout and wait strategy for product pages."""
    c = config or PacingConfig()
    return {
        "concurrency": max(1, min(int(c.pdp_concurrency), MAX_CONCURRENCY)),
        "timeout_ms": max(1, int(c.pdp_timeout_ms)),
        "wait_until": c.nav_wait_pdp,
    }


@dataclass
class Pacer:
    """
    Hands out navigation slots for one runner.

    reserve() books the next slot synchronously (no await between reading and
    writing next_slot), so concurrent workers each get their own slot; the
    caller then sleeps until it without holding anything.
    """
    config: PacingConfig
    clock: Callable[[], float] = time.monotonic
    rng: random.Random = field(default_factory=random.Random)
    started_at: Optional[float] = None
    next_slot: float = 0.0

    def start(self):
        self.started_at = self.clock()
        self.next_slot = self.started_at

    def elapsed(self) -> float:
        if self.started_at is None:
            self.start()
        return self.clock() - self.started_at

    def current_rate(self) -> float:
        return target_rate(self.config, self.elapsed())

    def reserve(self) -> float:
        """Book a slot; return seconds to wait before navigating."""
        now = self.clock()
        delay = next_navigation_delay_ms(self.config, self.elapsed(), self.rng) / 1000
        slot = max(now, self.next_slot)
        self.next_slot = slot + delay
        return slot - now

    async def wait_turn(self, sleep=asyncio.sleep):
        wait = self.reserve()
        if wait > 0:
            await sleep(wait)
