"""Unit tests for circuit breakers, health tracking and retries."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from bridge_reconciler.errors import (
    CircuitOpenError,
    LogSourceError,
    RangeTooWideError,
    RateLimitError,
    TransientSourceError,
)
from bridge_reconciler.resilience import (
    CircuitBreaker,
    CircuitState,
    ProviderHealth,
    ProviderHealthMonitor,
    ResilienceLayer,
    RetryPolicy,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCircuitBreaker:
    """Test suite for CircuitBreaker state transitions."""

    def test_opens_after_threshold_consecutive_failures(self):
        breaker = CircuitBreaker("ETHEREUM:rpc", threshold=3, cooldown=60, clock=FakeClock())

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow_request()
        assert breaker.times_opened == 1

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("k", threshold=2, clock=FakeClock())

        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state is CircuitState.CLOSED

    def test_half_open_after_cooldown_then_close_on_success(self):
        clock = FakeClock()
        breaker = CircuitBreaker("k", threshold=1, cooldown=30, clock=clock)
        breaker.record_failure()

        clock.advance(29)
        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_in() == pytest.approx(1)

        clock.advance(1)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request()

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("k", threshold=3, cooldown=10, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(10)
        assert breaker.state is CircuitState.HALF_OPEN

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_in() == pytest.approx(10)
        assert breaker.times_opened == 2

    def test_half_open_admits_one_trial_at_a_time(self):
        clock = FakeClock()
        breaker = CircuitBreaker("k", threshold=1, cooldown=30, clock=clock)
        breaker.record_failure()
        clock.advance(30)

        assert breaker.available
        assert breaker.allow_request()
        assert not breaker.available
        assert not breaker.allow_request()

        breaker.release_trial()
        assert breaker.allow_request()

        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        clock.advance(30)
        assert breaker.allow_request()

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("k", threshold=0)


class TestProviderHealthMonitor:
    """Test suite for provider health classification."""

    def _record(self, monitor, successes, failures, rate_limited=0):
        for _ in range(successes):
            monitor.record_request("p", True, 0.1)
        for _ in range(failures):
            monitor.record_request("p", False, 0.1, error="boom")
        for _ in range(rate_limited):
            monitor.record_request("p", False, 0.1, rate_limited=True, error="429")

    @pytest.mark.parametrize("successes,failures,rate_limited,expected", [
        (10, 0, 0, ProviderHealth.HEALTHY),
        (8, 2, 0, ProviderHealth.DEGRADED),
        (6, 4, 0, ProviderHealth.UNHEALTHY),
        (6, 0, 4, ProviderHealth.RATE_LIMITED),
    ])
    def test_classification(self, successes, failures, rate_limited, expected):
        monitor = ProviderHealthMonitor()
        self._record(monitor, successes, failures, rate_limited)
        assert monitor.get_provider_health("p") is expected

    def test_unknown_provider(self):
        monitor = ProviderHealthMonitor()
        assert monitor.get_provider_health("nope") is ProviderHealth.UNKNOWN
        assert monitor.get_stats("nope")["health"] == "unknown"

    def test_stats(self):
        monitor = ProviderHealthMonitor()
        self._record(monitor, 3, 1)

        stats = monitor.get_stats("p")

        assert stats["total_requests"] == 4
        assert stats["success_rate"] == 0.75
        assert stats["last_error"] == "boom"
        assert list(monitor.get_all_stats()) == ["p"]


class TestRetryPolicy:
    """Test suite for RetryPolicy validation and backoff."""

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1, max_delay=5, jitter=0)

        assert policy.delay_for(0) == 1
        assert policy.delay_for(1) == 2
        assert policy.delay_for(2) == 4
        assert policy.delay_for(5) == 5

    def test_rate_limit_waits_longer(self):
        policy = RetryPolicy(base_delay=1, jitter=0)
        assert policy.delay_for(0, rate_limited=True) > policy.delay_for(0)

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1, jitter=0.5)
        assert policy.delay_for(0, rand=lambda: 0.0) == 1
        assert policy.delay_for(0, rand=lambda: 1.0) == 1.5

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"max_attempts": 11},
        {"base_delay": 0.1},
        {"base_delay": 10, "max_delay": 5},
        {"jitter": 1.5},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestResilienceLayer:
    """Test suite for ResilienceLayer.call."""

    @pytest.fixture
    def sleep(self):
        return AsyncMock()

    @pytest.fixture
    def layer(self, sleep):
        return ResilienceLayer(
            policy=RetryPolicy(max_attempts=3, jitter=0),
            breaker_threshold=5,
            clock=FakeClock(),
            sleep=sleep,
        )

    @pytest.mark.asyncio
    async def test_transient_error_is_retried_then_succeeds(self, layer, sleep):
        fn = AsyncMock(side_effect=[TransientSourceError("reset", "rpc"), 42])

        assert await layer.call("ETHEREUM:rpc", fn) == 42

        assert fn.await_count == 2
        sleep.assert_awaited_once_with(pytest.approx(0.3))
        assert layer.health.get_stats("ETHEREUM:rpc")["total_requests"] == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, layer, sleep):
        fn = AsyncMock(side_effect=httpx.ConnectTimeout("timeout"))

        with pytest.raises(httpx.ConnectTimeout):
            await layer.call("k", fn)

        assert fn.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_uses_longer_delay(self, layer, sleep):
        fn = AsyncMock(side_effect=[RateLimitError("429", "explorer"), "ok"])

        await layer.call("k", fn)

        delay = sleep.await_args.args[0]
        assert delay == pytest.approx(0.3 * 3)

    @pytest.mark.asyncio
    async def test_non_retryable_error_surfaces_immediately(self, layer, sleep):
        fn = AsyncMock(side_effect=LogSourceError("bad request", "explorer"))

        with pytest.raises(LogSourceError):
            await layer.call("k", fn)

        assert fn.await_count == 1
        sleep.assert_not_awaited()
        assert layer.breaker("k").failure_count == 1

    @pytest.mark.asyncio
    async def test_range_error_is_not_retried_or_counted(self, layer):
        fn = AsyncMock(side_effect=RangeTooWideError("range too wide", "rpc"))

        with pytest.raises(RangeTooWideError):
            await layer.call("k", fn)

        assert fn.await_count == 1
        assert layer.breaker("k").failure_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, sleep):
        layer = ResilienceLayer(
            policy=RetryPolicy(max_attempts=2, jitter=0),
            breaker_threshold=2,
            clock=FakeClock(),
            sleep=sleep,
        )
        failing = AsyncMock(side_effect=TransientSourceError("down", "rpc"))
        with pytest.raises(TransientSourceError):
            await layer.call("k", failing)

        fn = AsyncMock(return_value=1)
        with pytest.raises(CircuitOpenError) as exc_info:
            await layer.call("k", fn)

        assert exc_info.value.key == "k"
        fn.assert_not_awaited()
        assert not layer.is_available("k")
        assert layer.get_status()["k"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_half_open_trial_without_verdict_frees_the_slot(self, sleep):
        clock = FakeClock()
        layer = ResilienceLayer(
            policy=RetryPolicy(max_attempts=1, jitter=0),
            breaker_threshold=1,
            breaker_cooldown=10,
            clock=clock,
            sleep=sleep,
        )
        with pytest.raises(TransientSourceError):
            await layer.call("k", AsyncMock(side_effect=TransientSourceError("down", "rpc")))
        clock.advance(10)

        with pytest.raises(RangeTooWideError):
            await layer.call("k", AsyncMock(side_effect=RangeTooWideError("too wide", "rpc")))
        assert layer.is_available("k")

        assert await layer.call("k", AsyncMock(return_value=7)) == 7
        assert layer.breaker("k").state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_breakers_are_per_provider(self, layer):
        layer.breaker("ETHEREUM:rpc").record_failure()
        assert layer.breaker("ETHEREUM:rpc").failure_count == 1
        assert layer.breaker("BSC:rpc").failure_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_stops_retrying(self):
        """Test that cancelling the caller interrupts the backoff sleep."""
        layer = ResilienceLayer(policy=RetryPolicy(max_attempts=5, base_delay=10, jitter=0))
        fn = AsyncMock(side_effect=TransientSourceError("down", "rpc"))

        task = asyncio.create_task(layer.call("k", fn))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert fn.await_count == 1
