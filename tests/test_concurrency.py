"""
Tests for ConcurrencyAdvisor: pressure buckets, the 60% safety cap,
configured bounds, caching and the emergency fallback.
"""

import asyncio
import logging

import pytest

from pyconductor import (
    EMERGENCY_FALLBACK_CONCURRENCY,
    ConcurrencyAdvisor,
    ExecutionConfig,
    PoolSample,
    PressureLevel,
    ResourcePool,
)
from pyconductor.executor.concurrency import PoolProbe


class StaticProbe:
    def __init__(self, size: int, busy: int):
        self.samples = 0
        self.size = size
        self.busy = busy

    def sample(self) -> PoolSample:
        self.samples += 1
        return PoolSample(size=self.size, busy=self.busy, available=self.size - self.busy)


class BrokenProbe:
    def sample(self) -> PoolSample:
        raise ConnectionError("pool stats unavailable")


WIDE = ExecutionConfig(min_concurrent_steps=1, max_concurrent_steps_limit=1000)


# ==============================================================================
# TEST 1: Pressure buckets
# ==============================================================================


@pytest.mark.parametrize(
    "utilization,level,health",
    [
        (0.0, PressureLevel.LOW, "healthy"),
        (0.49, PressureLevel.LOW, "healthy"),
        (0.5, PressureLevel.MODERATE, "healthy"),
        (0.7, PressureLevel.HIGH, "degraded"),
        (0.85, PressureLevel.CRITICAL, "critical"),
        (1.0, PressureLevel.CRITICAL, "critical"),
    ],
)
def test_pressure_thresholds(utilization, level, health):
    assert PressureLevel.from_utilization(utilization) is level
    assert level.health_status == health


@pytest.mark.parametrize(
    "busy,expected",
    [
        (0, 60),  # low: floor(100 * 0.8) = 80, capped at floor(100 * 0.6) = 60
        (60, 24),  # moderate: floor(40 * 0.6) = 24 (cap also 24)
        (75, 10),  # high: floor(25 * 0.4) = 10
        (90, 2),  # critical: floor(10 * 0.2) = 2
    ],
)
def test_recommendation_per_bucket(busy, expected):
    advisor = ConcurrencyAdvisor(StaticProbe(100, busy), WIDE)

    assessment = advisor.assess()

    assert assessment.recommended == expected
    assert assessment.sample.available == 100 - busy


def test_safety_cap_limits_low_pressure():
    advisor = ConcurrencyAdvisor(
        StaticProbe(100, 0), WIDE, pressure_factors={PressureLevel.LOW: 1.0}
    )

    assert advisor.recommended_concurrency() == 60


# ==============================================================================
# TEST 2: Configured bounds
# ==============================================================================


def test_clamped_to_max():
    advisor = ConcurrencyAdvisor(StaticProbe(100, 0), ExecutionConfig())

    assert advisor.recommended_concurrency() == 12


def test_clamped_to_min_on_exhausted_pool():
    advisor = ConcurrencyAdvisor(StaticProbe(10, 10), ExecutionConfig())

    assert advisor.recommended_concurrency() == 3


def test_utilization_rounded():
    assert PoolSample(size=3, busy=1, available=2).utilization == 0.333
    assert PoolSample(size=0, busy=0, available=0).utilization == 0.0


# ==============================================================================
# TEST 3: Emergency fallback
# ==============================================================================


def test_probe_failure_returns_fallback(caplog):
    """A failing probe yields the emergency constant, never zero or unbounded."""
    advisor = ConcurrencyAdvisor(BrokenProbe(), ExecutionConfig())

    with caplog.at_level(logging.WARNING, logger="pyconductor.executor.concurrency"):
        value = advisor.recommended_concurrency()

    assert value == EMERGENCY_FALLBACK_CONCURRENCY == 3
    assert "ConnectionError" in caplog.text
    assert "fallback concurrency=3" in caplog.text


def test_assess_propagates_probe_failure():
    with pytest.raises(ConnectionError):
        ConcurrencyAdvisor(BrokenProbe()).assess()


# ==============================================================================
# TEST 4: Re-query and caching
# ==============================================================================


def test_requeried_every_call_without_cache():
    probe = StaticProbe(100, 0)
    advisor = ConcurrencyAdvisor(probe, WIDE)

    first = advisor.recommended_concurrency()
    probe.busy = 90
    second = advisor.recommended_concurrency()

    assert (first, second) == (60, 2)
    assert probe.samples == 2


def test_cached_within_duration():
    now = [0.0]
    probe = StaticProbe(100, 0)
    config = ExecutionConfig(
        min_concurrent_steps=1, max_concurrent_steps_limit=1000, concurrency_cache_duration=10
    )
    advisor = ConcurrencyAdvisor(probe, config, clock=lambda: now[0])

    assert advisor.recommended_concurrency() == 60
    probe.busy = 90
    now[0] = 5.0
    assert advisor.recommended_concurrency() == 60
    now[0] = 11.0
    assert advisor.recommended_concurrency() == 2
    assert probe.samples == 2


# ==============================================================================
# TEST 5: ResourcePool as a probe
# ==============================================================================


def test_resource_pool_is_a_probe():
    assert isinstance(ResourcePool(4), PoolProbe)
    with pytest.raises(ValueError):
        ResourcePool(0)


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_resource_pool_tracks_busy_slots():
    pool = ResourcePool(2)
    entered = asyncio.Event()
    release = asyncio.Event()
    peak = 0

    async def hold():
        nonlocal peak
        async with pool.acquire():
            peak = max(peak, pool.busy)
            entered.set()
            await release.wait()

    tasks = [asyncio.create_task(hold()) for _ in range(3)]
    await entered.wait()
    await asyncio.sleep(0)

    assert pool.sample() == PoolSample(size=2, busy=2, available=0)

    release.set()
    await asyncio.gather(*tasks)

    assert peak == 2
    assert pool.busy == 0
