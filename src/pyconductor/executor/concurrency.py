"""
Dynamic step concurrency driven by shared-resource pressure.

The ConcurrencyAdvisor is the only component that decides how many steps
may run at once. It samples a PoolProbe (by default the ResourcePool the
step handlers draw connections from) and maps utilization to a pressure
bucket:

    low       [0.00, 0.50)  factor 0.8   healthy
    moderate  [0.50, 0.70)  factor 0.6   healthy
    high      [0.70, 0.85)  factor 0.4   degraded
    critical  [0.85, ∞)     factor 0.2   critical

recommended = floor(available * factor), limited to floor(available * 0.6),
then clamped to [min_concurrent_steps, max_concurrent_steps_limit].

If the probe raises, the advisor logs a warning and returns
EMERGENCY_FALLBACK_CONCURRENCY. It never blocks execution and never
recommends zero or unbounded concurrency.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from pyconductor.config import ExecutionConfig

logger = logging.getLogger(__name__)

__all__ = [
    "EMERGENCY_FALLBACK_CONCURRENCY",
    "MAX_SAFE_CONNECTION_PERCENTAGE",
    "PoolSample",
    "PoolProbe",
    "ResourcePool",
    "PressureLevel",
    "PoolAssessment",
    "ConcurrencyAdvisor",
]

EMERGENCY_FALLBACK_CONCURRENCY = 3
MAX_SAFE_CONNECTION_PERCENTAGE = 0.6
UTILIZATION_PRECISION = 3


@dataclass(frozen=True)
class PoolSample:
    """Point-in-time reading of a bounded resource pool."""

    size: int
    busy: int
    available: int

    @property
    def utilization(self) -> float:
        if self.size <= 0:
            return 0.0
        return round(self.busy / self.size, UTILIZATION_PRECISION)


@runtime_checkable
class PoolProbe(Protocol):
    """Anything that can report (size, busy, available) for a shared pool."""

    def sample(self) -> PoolSample: ...


class ResourcePool:
    """
    Bounded asyncio pool of interchangeable slots (e.g. connections).

    Also a PoolProbe, so an advisor can watch the pool its handlers use.

    Usage:
        pool = ResourcePool(10)

        async with pool.acquire():
            await call_downstream_service()
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"pool size must be >= 1, got {size}")
        self._size = size
        self._busy = 0
        self._semaphore = asyncio.Semaphore(size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def busy(self) -> int:
        return self._busy

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self._busy += 1
            try:
                yield
            finally:
                self._busy -= 1

    def sample(self) -> PoolSample:
        return PoolSample(size=self._size, busy=self._busy, available=self._size - self._busy)


class PressureLevel(Enum):
    """Connection pressure bucket, ordered by increasing utilization."""

    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_utilization(cls, utilization: float) -> PressureLevel:
        if utilization < 0.5:
            return cls.LOW
        if utilization < 0.7:
            return cls.MODERATE
        if utilization < 0.85:
            return cls.HIGH
        return cls.CRITICAL

    @property
    def default_factor(self) -> float:
        return _DEFAULT_FACTORS[self]

    @property
    def health_status(self) -> str:
        if self in (PressureLevel.LOW, PressureLevel.MODERATE):
            return "healthy"
        if self is PressureLevel.HIGH:
            return "degraded"
        return "critical"

    def __str__(self) -> str:
        return self.value


_DEFAULT_FACTORS: dict[PressureLevel, float] = {
    PressureLevel.LOW: 0.8,
    PressureLevel.MODERATE: 0.6,
    PressureLevel.HIGH: 0.4,
    PressureLevel.CRITICAL: 0.2,
}


@dataclass(frozen=True)
class PoolAssessment:
    """Full advisor verdict for one pool sample."""

    utilization: float
    pressure: PressureLevel
    health_status: str
    recommended: int
    sample: PoolSample


class ConcurrencyAdvisor:
    """
    Recommends how many steps to dispatch in the next batch.

    Re-query before every batch: pressure changes over time. With
    ``concurrency_cache_duration > 0`` a recommendation is reused for that
    many seconds.

    Usage:
        advisor = ConcurrencyAdvisor(pool, ExecutionConfig())
        batch_size = advisor.recommended_concurrency()
    """

    def __init__(
        self,
        probe: PoolProbe,
        config: ExecutionConfig | None = None,
        pressure_factors: Mapping[PressureLevel, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._probe = probe
        self.config = config or ExecutionConfig()
        self._factors = dict(_DEFAULT_FACTORS)
        if pressure_factors:
            self._factors.update(pressure_factors)
        self._clock = clock
        self._cached: tuple[float, int] | None = None

    def assess(self) -> PoolAssessment:
        """
        Sample the pool and compute the recommendation.

        Raises:
            Exception: Whatever the probe raised (recommended_concurrency() absorbs it)
        """
        sample = self._probe.sample()
        utilization = sample.utilization
        pressure = PressureLevel.from_utilization(utilization)
        available = max(sample.available, 0)

        base = math.floor(available * self._factors[pressure])
        safe_cap = math.floor(available * MAX_SAFE_CONNECTION_PERCENTAGE)
        recommended = min(base, safe_cap)
        recommended = max(
            self.config.min_concurrent_steps,
            min(recommended, self.config.max_concurrent_steps_limit),
        )

        return PoolAssessment(
            utilization=utilization,
            pressure=pressure,
            health_status=pressure.health_status,
            recommended=recommended,
            sample=sample,
        )

    def recommended_concurrency(self) -> int:
        """Concurrency for the next batch; EMERGENCY_FALLBACK_CONCURRENCY if sampling fails."""
        if self._cached is not None and self.config.concurrency_cache_duration > 0:
            cached_at, value = self._cached
            if self._clock() - cached_at < self.config.concurrency_cache_duration:
                return value

        try:
            assessment = self.assess()
        except Exception as e:
            logger.warning(
                f"Resource pool probe failed ({type(e).__name__}: {e}), "
                f"using fallback concurrency={EMERGENCY_FALLBACK_CONCURRENCY}"
            )
            return EMERGENCY_FALLBACK_CONCURRENCY

        logger.debug(
            f"Dynamic concurrency={assessment.recommended}, pressure={assessment.pressure}, "
            f"size={assessment.sample.size}, available={assessment.sample.available}"
        )
        self._cached = (self._clock(), assessment.recommended)
        return assessment.recommended
