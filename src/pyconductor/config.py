"""
Execution, backoff and orchestration settings.

All three are frozen dataclasses validated in ``__post_init__``. Each has a
``from_env()`` classmethod reading ``PYCONDUCTOR_*`` variables, so a
deployment can tune behaviour without code changes:

    PYCONDUCTOR_MIN_CONCURRENT_STEPS=4
    PYCONDUCTOR_MAX_CONCURRENT_STEPS_LIMIT=16
    PYCONDUCTOR_MAX_BACKOFF_SECONDS=600
    PYCONDUCTOR_MAX_PASS_ITERATIONS=25

Unset variables keep the dataclass defaults.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from pyconductor.core.errors import ConfigurationError

ENV_PREFIX = "PYCONDUCTOR_"

__all__ = [
    "ENV_PREFIX",
    "ExecutionConfig",
    "BackoffConfig",
    "OrchestratorConfig",
]


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ExecutionConfig:
    """Step dispatch limits and batch timeouts."""

    min_concurrent_steps: int = 3
    """Lower bound on the concurrency recommendation."""

    max_concurrent_steps_limit: int = 12
    """Upper bound on the concurrency recommendation."""

    concurrency_cache_duration: float = 0.0
    """Seconds a concurrency recommendation may be reused (0 re-samples every batch)."""

    batch_timeout_base_seconds: float = 30.0
    batch_timeout_per_step_seconds: float = 5.0
    max_batch_timeout_seconds: float = 120.0

    def __post_init__(self) -> None:
        if self.min_concurrent_steps < 1:
            raise ConfigurationError(
                f"min_concurrent_steps must be >= 1, got {self.min_concurrent_steps}"
            )
        if self.max_concurrent_steps_limit < self.min_concurrent_steps:
            raise ConfigurationError(
                f"max_concurrent_steps_limit ({self.max_concurrent_steps_limit}) must be >= "
                f"min_concurrent_steps ({self.min_concurrent_steps})"
            )
        if self.max_concurrent_steps_limit > 1000:
            raise ConfigurationError(
                f"max_concurrent_steps_limit must be <= 1000, got {self.max_concurrent_steps_limit}"
            )
        if self.concurrency_cache_duration < 0:
            raise ConfigurationError("concurrency_cache_duration must be >= 0")
        if (
            self.batch_timeout_base_seconds < 0
            or self.batch_timeout_per_step_seconds < 0
            or self.max_batch_timeout_seconds < 0
        ):
            raise ConfigurationError("batch timeouts must be >= 0")
        if self.batch_timeout_base_seconds > self.max_batch_timeout_seconds:
            raise ConfigurationError(
                f"batch_timeout_base_seconds ({self.batch_timeout_base_seconds}) must be <= "
                f"max_batch_timeout_seconds ({self.max_batch_timeout_seconds})"
            )

    def calculate_batch_timeout(self, step_count: int) -> float:
        """
        Timeout for a batch of ``step_count`` concurrently dispatched steps.

        Example:
            ExecutionConfig().calculate_batch_timeout(4)   # 50.0
            ExecutionConfig().calculate_batch_timeout(40)  # 120.0 (capped)
        """
        timeout = self.batch_timeout_base_seconds + (
            max(step_count, 0) * self.batch_timeout_per_step_seconds
        )
        return min(timeout, self.max_batch_timeout_seconds)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ExecutionConfig:
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            min_concurrent_steps=_env_int(env, "MIN_CONCURRENT_STEPS", defaults.min_concurrent_steps),
            max_concurrent_steps_limit=_env_int(
                env, "MAX_CONCURRENT_STEPS_LIMIT", defaults.max_concurrent_steps_limit
            ),
            concurrency_cache_duration=_env_float(
                env, "CONCURRENCY_CACHE_DURATION", defaults.concurrency_cache_duration
            ),
            batch_timeout_base_seconds=_env_float(
                env, "BATCH_TIMEOUT_BASE_SECONDS", defaults.batch_timeout_base_seconds
            ),
            batch_timeout_per_step_seconds=_env_float(
                env, "BATCH_TIMEOUT_PER_STEP_SECONDS", defaults.batch_timeout_per_step_seconds
            ),
            max_batch_timeout_seconds=_env_float(
                env, "MAX_BATCH_TIMEOUT_SECONDS", defaults.max_batch_timeout_seconds
            ),
        )


@dataclass(frozen=True)
class BackoffConfig:
    """Active retry scheduling (executor side, as opposed to readiness polling)."""

    default_backoff_seconds: tuple[int, ...] = (1, 2, 4, 8, 16, 32)
    """Backoff progression indexed by attempt count."""

    max_backoff_seconds: float = 300.0
    backoff_multiplier: float = 2.0
    """Exponent used past the end of default_backoff_seconds (attempts ** multiplier)."""

    jitter_enabled: bool = True
    jitter_max_percentage: float = 0.1

    default_reenqueue_delay: float = 30.0
    """Delay used when a failed step has no computable retry instant."""

    buffer_seconds: float = 5.0
    """Delay before re-handling a task whose remaining steps are still being worked on."""

    def __post_init__(self) -> None:
        if not self.default_backoff_seconds:
            raise ConfigurationError("default_backoff_seconds must not be empty")
        if any(s < 0 for s in self.default_backoff_seconds):
            raise ConfigurationError("default_backoff_seconds entries must be >= 0")
        if self.max_backoff_seconds <= 0:
            raise ConfigurationError(
                f"max_backoff_seconds must be > 0, got {self.max_backoff_seconds}"
            )
        if self.backoff_multiplier < 1:
            raise ConfigurationError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )
        if not 0.0 <= self.jitter_max_percentage <= 1.0:
            raise ConfigurationError(
                f"jitter_max_percentage must be within [0, 1], got {self.jitter_max_percentage}"
            )
        if self.default_reenqueue_delay < 0 or self.buffer_seconds < 0:
            raise ConfigurationError("re-enqueue delays must be >= 0")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BackoffConfig:
        env = os.environ if env is None else env
        defaults = cls()
        progression = defaults.default_backoff_seconds
        raw = env.get(ENV_PREFIX + "DEFAULT_BACKOFF_SECONDS")
        if raw:
            try:
                progression = tuple(int(part) for part in raw.split(",") if part.strip())
            except ValueError as e:
                raise ConfigurationError(
                    f"{ENV_PREFIX}DEFAULT_BACKOFF_SECONDS must be comma-separated integers, "
                    f"got {raw!r}"
                ) from e
        return cls(
            default_backoff_seconds=progression,
            max_backoff_seconds=_env_float(env, "MAX_BACKOFF_SECONDS", defaults.max_backoff_seconds),
            backoff_multiplier=_env_float(env, "BACKOFF_MULTIPLIER", defaults.backoff_multiplier),
            jitter_enabled=_env_bool(env, "JITTER_ENABLED", defaults.jitter_enabled),
            jitter_max_percentage=_env_float(
                env, "JITTER_MAX_PERCENTAGE", defaults.jitter_max_percentage
            ),
            default_reenqueue_delay=_env_float(
                env, "DEFAULT_REENQUEUE_DELAY", defaults.default_reenqueue_delay
            ),
            buffer_seconds=_env_float(env, "BUFFER_SECONDS", defaults.buffer_seconds),
        )


@dataclass(frozen=True)
class OrchestratorConfig:
    """Everything an Orchestrator needs beyond its collaborators."""

    max_pass_iterations: int = 50
    """Upper bound on same-invocation re-discovery loops before parking the task."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self) -> None:
        if self.max_pass_iterations < 1:
            raise ConfigurationError(
                f"max_pass_iterations must be >= 1, got {self.max_pass_iterations}"
            )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> OrchestratorConfig:
        env = os.environ if env is None else env
        return cls(
            max_pass_iterations=_env_int(env, "MAX_PASS_ITERATIONS", 50),
            execution=ExecutionConfig.from_env(env),
            backoff=BackoffConfig.from_env(env),
        )
