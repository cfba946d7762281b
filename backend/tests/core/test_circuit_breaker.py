"""
Tests for the upstream circuit breaker.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from attendance_sync.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitBreakerTimeoutError,
    CircuitOpenError,
    CircuitState,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class UpstreamDown(Exception):
    pass


async def failing():
    raise UpstreamDown("503")


async def succeeding():
    return "ok"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, recovery_timeout=60.0, name="test_sis", clock=clock)


class TestCircuitBreakerTransitions:
    """State machine behaviour."""

    @pytest.mark.asyncio
    async def test_starts_closed_and_passes_calls(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(succeeding) == "ok"
        assert breaker.metrics.successful_requests == 1

    @pytest.mark.asyncio
    async def test_opens_after_exactly_threshold_failures(self, breaker):
        for attempt in range(3):
            assert breaker.state == CircuitState.CLOSED
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_invoke_operation(self, breaker):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        operation = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await breaker.execute(operation)

        operation.assert_not_called()
        assert breaker.metrics.rejected_requests == 1

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker):
        for _ in range(2):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)
        await breaker.execute(succeeding)
        for _ in range(2):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        clock.advance(59.9)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeeding)

        clock.advance(0.1)
        assert await breaker.execute(succeeding) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_probe_reopens_and_resets_timer(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        clock.advance(60)
        with pytest.raises(UpstreamDown):
            await breaker.execute(failing)
        assert breaker.state == CircuitState.OPEN

        clock.advance(30)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeeding)

        clock.advance(30)
        await breaker.execute(succeeding)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_exactly_one_probe_while_half_open(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)
        clock.advance(60)

        release = asyncio.Event()
        probe_calls = 0

        async def slow_probe():
            nonlocal probe_calls
            probe_calls += 1
            await release.wait()
            return "recovered"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.execute(slow_probe)

        release.set()
        assert await probe == "recovered"
        assert probe_calls == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_threshold_requires_several_probes(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, success_threshold=2, clock=clock)
        with pytest.raises(UpstreamDown):
            await breaker.execute(failing)
        clock.advance(10)

        await breaker.execute(succeeding)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(succeeding)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unexpected_exception_type_is_not_counted(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, expected_exception=UpstreamDown, clock=clock)

        async def buggy():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await breaker.execute(buggy)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, timeout=0.01, clock=clock)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(CircuitBreakerTimeoutError):
            await breaker.execute(hang)
        assert breaker.state == CircuitState.OPEN
        assert breaker.metrics.timeout_requests == 1

    @pytest.mark.asyncio
    async def test_call_passes_arguments(self, breaker):
        async def add(a, b=0):
            return a + b

        assert await breaker.call(add, 2, b=3) == 5


class TestCircuitBreakerConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_failures_counted_once_each(self, clock):
        breaker = CircuitBreaker(failure_threshold=50, clock=clock)

        results = await asyncio.gather(*(breaker.execute(failing) for _ in range(20)), return_exceptions=True)

        assert all(isinstance(r, UpstreamDown) for r in results)
        assert breaker.failure_count == 20
        assert breaker.metrics.failed_requests == 20


class TestCircuitBreakerManualControl:

    @pytest.mark.asyncio
    async def test_force_open_and_closed(self, breaker):
        await breaker.force_open("maintenance")
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeeding)

        await breaker.force_closed("maintenance over")
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(succeeding) == "ok"

    @pytest.mark.asyncio
    async def test_status_reports_transitions(self, breaker):
        for _ in range(3):
            with pytest.raises(UpstreamDown):
                await breaker.execute(failing)

        status = breaker.get_status()
        assert status["name"] == "test_sis"
        assert status["state"] == "OPEN"
        assert status["metrics"]["failed_requests"] == 3
        assert status["metrics"]["state_changes"][-1]["to_state"] == "OPEN"

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreaker(success_threshold=0)


class TestCircuitBreakerManager:

    def test_get_or_create_returns_same_instance(self):
        manager = CircuitBreakerManager()
        first = manager.get_or_create("sis", failure_threshold=2)
        second = manager.get_or_create("sis", failure_threshold=9)

        assert first is second
        assert first.config.failure_threshold == 2

    def test_duplicate_create_rejected(self):
        manager = CircuitBreakerManager()
        manager.create_circuit_breaker("sis")
        with pytest.raises(ValueError):
            manager.create_circuit_breaker("sis")

    @pytest.mark.asyncio
    async def test_health_summary(self):
        manager = CircuitBreakerManager()
        manager.create_circuit_breaker("a")
        b = manager.create_circuit_breaker("b")
        await b.force_open()

        summary = manager.get_health_summary()
        assert summary["total_circuit_breakers"] == 2
        assert summary["open"] == 1
        assert summary["closed"] == 1
        assert summary["health_score"] == 0.5

        assert manager.remove_circuit_breaker("a")
        assert manager.get_circuit_breaker("a") is None
