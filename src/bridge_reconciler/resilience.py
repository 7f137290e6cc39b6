#!/usr/bin/env python3
"""Resilience layer for log source requests.

Provides per-provider circuit breakers, a provider health monitor and a retry
helper with capped exponential backoff and jitter. Every network request made
by a log source goes through ``ResilienceLayer.call``.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx

from .errors import (
    CircuitOpenError,
    RangeTooWideError,
    RateLimitError,
    TransientSourceError,
    UnsupportedOperationError,
)

# Get logger for this module
logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientSourceError,
    httpx.TimeoutException,
    httpx.NetworkError,
    TimeoutError,
    ConnectionError,
)

# Errors about the request itself, not the provider; they never trip a breaker
REQUEST_ERRORS: tuple[type[Exception], ...] = (RangeTooWideError, UnsupportedOperationError)


class CircuitState(Enum):
    """State of a circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one provider.

    After ``threshold`` consecutive failures the circuit opens and calls fail
    fast. Once ``cooldown`` seconds have passed the circuit half-opens and admits
    one trial request at a time; its success closes the circuit, its failure
    re-opens it.
    """

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        if threshold <= 0:
            raise ValueError(f"Breaker threshold must be positive, got {threshold}")
        if cooldown < 0:
            raise ValueError(f"Breaker cooldown must be non-negative, got {cooldown}")

        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: float | None = None
        self.times_opened = 0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self.retry_in() <= 0:
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit for {self.name} half-open, allowing a trial request")
        return self._state

    def retry_in(self) -> float:
        """Seconds until an open circuit admits a trial request."""
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.cooldown - self._clock())

    @property
    def available(self) -> bool:
        """Whether a request would be admitted, without claiming the trial slot."""
        state = self.state
        return state is CircuitState.CLOSED or (
            state is CircuitState.HALF_OPEN and not self._trial_in_flight
        )

    def allow_request(self) -> bool:
        if not self.available:
            return False
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = True
        return True

    def release_trial(self) -> None:
        """Free the trial slot of a request that ended without a verdict."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info(f"Circuit for {self.name} closed after successful request")
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self._open()

    def _open(self) -> None:
        if self._state is not CircuitState.OPEN:
            self.times_opened += 1
            logger.warning(
                f"Circuit for {self.name} opened after {self.failure_count} failures, "
                f"cooling down for {self.cooldown}s"
            )
        self._state = CircuitState.OPEN
        self.opened_at = self._clock()
        self._trial_in_flight = False

    def get_status(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "times_opened": self.times_opened,
            "retry_in": round(self.retry_in(), 1),
        }


class ProviderHealth(Enum):
    """Health classification of a provider."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


@dataclass
class ProviderStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_requests: int = 0
    total_response_time: float = 0.0
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    @property
    def rate_limit_ratio(self) -> float:
        return self.rate_limited_requests / self.total_requests if self.total_requests else 0.0

    @property
    def average_response_time(self) -> float:
        return self.total_response_time / self.total_requests if self.total_requests else 0.0


class ProviderHealthMonitor:
    """Tracks request outcomes per provider and classifies provider health."""

    RATE_LIMITED_RATIO = 0.3
    UNHEALTHY_SUCCESS_RATE = 0.7
    DEGRADED_SUCCESS_RATE = 0.9

    def __init__(self) -> None:
        self._stats: dict[str, ProviderStats] = {}

    def record_request(
        self,
        key: str,
        success: bool,
        response_time: float = 0.0,
        rate_limited: bool = False,
        error: str | None = None
    ) -> None:
        stats = self._stats.setdefault(key, ProviderStats())
        stats.total_requests += 1
        stats.total_response_time += response_time
        if success:
            stats.successful_requests += 1
        else:
            stats.failed_requests += 1
            stats.last_error = error
        if rate_limited:
            stats.rate_limited_requests += 1

    def get_provider_health(self, key: str) -> ProviderHealth:
        stats = self._stats.get(key)
        if stats is None or stats.total_requests == 0:
            return ProviderHealth.UNKNOWN
        if stats.rate_limit_ratio > self.RATE_LIMITED_RATIO:
            return ProviderHealth.RATE_LIMITED
        if stats.success_rate < self.UNHEALTHY_SUCCESS_RATE:
            return ProviderHealth.UNHEALTHY
        if stats.success_rate < self.DEGRADED_SUCCESS_RATE:
            return ProviderHealth.DEGRADED
        return ProviderHealth.HEALTHY

    def get_stats(self, key: str) -> dict[str, object]:
        stats = self._stats.get(key, ProviderStats())
        return {
            "health": self.get_provider_health(key).value,
            "total_requests": stats.total_requests,
            "success_rate": round(stats.success_rate, 3),
            "rate_limit_ratio": round(stats.rate_limit_ratio, 3),
            "average_response_time": round(stats.average_response_time, 3),
            "last_error": stats.last_error,
        }

    def get_all_stats(self) -> dict[str, dict[str, object]]:
        return {key: self.get_stats(key) for key in sorted(self._stats)}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Capped exponential backoff with jitter.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for a single backoff delay
        backoff_multiplier: Growth factor between attempts
        jitter: Fraction of the delay added at random
        rate_limit_multiplier: Extra factor applied after a rate-limit error
    """

    max_attempts: int = 3
    base_delay: float = 0.3
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    rate_limit_multiplier: float = 3.0

    def __post_init__(self) -> None:
        """Validate retry policy."""
        if self.max_attempts < 1:
            raise ValueError(f"Max attempts must be at least 1, got {self.max_attempts}")
        if self.max_attempts > 10:
            raise ValueError(f"Max attempts too high (max 10), got {self.max_attempts}")
        if self.base_delay < 0.3:
            raise ValueError(f"Base delay must be at least 0.3s, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"Max delay ({self.max_delay}) must not be below base delay ({self.base_delay})"
            )
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"Jitter must be between 0 and 1, got {self.jitter}")

    def delay_for(
        self,
        attempt: int,
        rate_limited: bool = False,
        rand: Callable[[], float] = random.random
    ) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if rate_limited:
            delay *= self.rate_limit_multiplier
        return delay * (1 + self.jitter * rand())


class ResilienceLayer:
    """Breakers, health tracking and retries for every provider request.

    Providers are identified by a key such as ``"ETHEREUM:rpc"`` so that each
    network's sources fail independently.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        breaker_threshold: int = 5,
        breaker_cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.breaker_threshold = breaker_threshold
        self.breaker_cooldown = breaker_cooldown
        self.health = ProviderHealthMonitor()
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, key: str) -> CircuitBreaker:
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(
                key,
                threshold=self.breaker_threshold,
                cooldown=self.breaker_cooldown,
                clock=self._clock,
            )
        return self._breakers[key]

    def is_available(self, key: str) -> bool:
        return self.breaker(key).available

    async def call(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` with circuit breaking and retries.

        Retryable errors are retried up to ``policy.max_attempts`` times with
        backoff; any other error surfaces immediately. Cancellation is never
        caught, so a cancelled caller stops retrying at once.

        Raises:
            CircuitOpenError: If the provider's circuit is open
        """
        breaker = self.breaker(key)
        last_error: BaseException | None = None

        for attempt in range(self.policy.max_attempts):
            if not breaker.allow_request():
                raise CircuitOpenError(key, breaker.retry_in())

            started = self._clock()
            try:
                result = await fn()
            except asyncio.CancelledError:
                breaker.release_trial()
                raise
            except REQUEST_ERRORS:
                breaker.release_trial()
                raise
            except RETRYABLE_EXCEPTIONS as e:
                rate_limited = isinstance(e, RateLimitError)
                breaker.record_failure()
                self.health.record_request(
                    key, False, self._clock() - started, rate_limited=rate_limited, error=str(e)
                )
                last_error = e
                if attempt + 1 >= self.policy.max_attempts:
                    break
                delay = self.policy.delay_for(attempt, rate_limited=rate_limited)
                logger.warning(
                    f"{key} request failed (attempt {attempt + 1}/{self.policy.max_attempts}): "
                    f"{e}. Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue
            except Exception as e:
                breaker.record_failure()
                self.health.record_request(key, False, self._clock() - started, error=str(e))
                raise

            breaker.record_success()
            self.health.record_request(key, True, self._clock() - started)
            return result

        logger.error(f"{key} request failed after {self.policy.max_attempts} attempts: {last_error}")
        raise last_error

    def get_status(self) -> dict[str, dict[str, object]]:
        return {
            key: {**breaker.get_status(), **self.health.get_stats(key)}
            for key, breaker in sorted(self._breakers.items())
        }
