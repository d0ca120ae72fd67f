import random

import pytest

from catalog_crawler.config import MAX_CONCURRENCY
from catalog_crawler.errors import ConfigurationError
from catalog_crawler.pacing import (
    Pacer,
    PacingConfig,
    RampStep,
    error_budget,
    jitter_delay_ms,
    next_navigation_delay_ms,
    parse_ramp_schedule,
    pdp_params,
    retry_params,
    target_rate,
)

RAMP = (RampStep(0, 1.0), RampStep(180, 1.5), RampStep(900, 2.0))


def test_parse_ramp_schedule_sorts_and_clamps():
    steps = parse_ramp_schedule("180:1.5, 0:1.0,900:2, -5:0.01")
    assert [s.t for s in steps] == [0, 0, 180, 900]
    assert min(s.rps for s in steps) == 0.1


def test_parse_empty_ramp():
    assert parse_ramp_schedule("") == (RampStep(0.0, 1.0),)


def test_parse_bad_ramp():
    with pytest.raises(ConfigurationError):
        parse_ramp_schedule("0:1,oops")


def test_ramp_steps():
    cfg = PacingConfig(host_max_nav_rps=5, ramp=RAMP)
    assert target_rate(cfg, 0) == 1.0
    assert target_rate(cfg, 179.9) == 1.0
    assert target_rate(cfg, 180) == 1.5
    assert target_rate(cfg, 10_000) == 2.0


def test_rate_never_exceeds_ceiling():
    cfg = PacingConfig(host_max_nav_rps=1.2, ramp=RAMP)
    for elapsed in range(0, 2000, 7):
        assert target_rate(cfg, elapsed) <= 1.2


def test_no_ramp_runs_at_ceiling():
    assert target_rate(PacingConfig(host_max_nav_rps=0.5), 42) == 0.5
    assert target_rate(None, 0) == 1.0


def test_unsorted_ramp_is_sorted():
    cfg = PacingConfig(ramp=(RampStep(900, 2.0), RampStep(0, 1.0)))
    assert [s.t for s in cfg.ramp] == [0, 900]


def test_unknown_wait_strategy():
    with pytest.raises(ConfigurationError):
        PacingConfig(nav_wait_pdp="whenever")


def test_jitter_within_bounds():
    cfg = PacingConfig(min_delay_ms=150, max_delay_ms=400)
    rng = random.Random(7)
    values = [jitter_delay_ms(cfg, rng) for _ in range(200)]
    assert all(150 <= v <= 400 for v in values)
    assert jitter_delay_ms(PacingConfig(), rng) == 0


def test_delay_respects_min_spacing():
    cfg = PacingConfig(host_max_nav_rps=2, goto_min_spacing_ms=5000)
    assert next_navigation_delay_ms(cfg, 0) == 5000
    fast = PacingConfig(host_max_nav_rps=2)
    assert next_navigation_delay_ms(fast, 0) == 500


def test_param_helpers():
    cfg = PacingConfig(pdp_concurrency=8, fetch_retries=6, fetch_retry_base_ms=900, cooldown_seconds=120)
    assert pdp_params(cfg)["concurrency"] == MAX_CONCURRENCY
    assert retry_params(cfg) == (6, 900)
    assert error_budget(cfg)["cooldown_sec"] == 120
    assert pdp_params(PacingConfig(pdp_concurrency=0))["concurrency"] == 1


def test_pacer_hands_out_spaced_slots():
    now = [100.0]
    pacer = Pacer(PacingConfig(host_max_nav_rps=2), clock=lambda: now[0])
    pacer.start()
    assert pacer.reserve() == 0
    assert pacer.reserve() == pytest.approx(0.5)
    assert pacer.reserve() == pytest.approx(1.0)
    now[0] += 10
    assert pacer.reserve() == 0
