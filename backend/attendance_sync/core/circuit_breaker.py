"""
Circuit Breaker Pattern Implementation for Upstream SIS Resilience.

This module implements the circuit breaker pattern to stop hammering the
upstream Student Information System while it is failing.

Circuit Breaker States:
- CLOSED: Normal operation, requests pass through
- OPEN: Circuit is tripped, requests fail fast with CircuitOpenError
- HALF_OPEN: A single probe request is let through to test recovery
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Type, Dict, List, TypeVar
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: float = 60.0  # Seconds since last failure before probing
    success_threshold: int = 1  # Successful probes needed to close from half-open
    timeout: Optional[float] = None  # Per-call timeout in seconds
    expected_exception: Type[Exception] = Exception


@dataclass
class CircuitBreakerMetrics:
    """Metrics tracking for circuit breaker."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeout_requests: int = 0
    rejected_requests: int = 0
    state_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Calculate success rate over requests that reached the upstream."""
        attempted = self.successful_requests + self.failed_requests
        if attempted == 0:
            return 1.0
        return self.successful_requests / attempted

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    def record_state_change(self, from_state: CircuitState, to_state: CircuitState, reason: str):
        """Record a state transition."""
        self.state_changes.append({
            'timestamp': datetime.utcnow().isoformat(),
            'from_state': from_state.value,
            'to_state': to_state.value,
            'reason': reason
        })


class CircuitOpenError(Exception):
    """Raised when the circuit is open and the call was not attempted."""

    def __init__(self, name: str, retry_in: Optional[float] = None):
        message = f"Circuit breaker '{name}' is open"
        if retry_in is not None:
            message += f" (next probe in {retry_in:.1f}s)"
        super().__init__(message)
        self.name = name
        self.retry_in = retry_in


class CircuitBreakerTimeoutError(Exception):
    """Exception raised when a guarded call times out."""
    pass


class CircuitBreaker:
    """
    Circuit breaker guarding a single upstream dependency.

    Counters are only touched while holding ``_lock``; the guarded call itself
    runs outside the lock so concurrent callers are not serialised.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 1,
        timeout: Optional[float] = None,
        expected_exception: Type[Exception] = Exception,
        name: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if recovery_timeout < 0:
            raise ValueError("recovery_timeout must not be negative")
        if success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")

        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            success_threshold=success_threshold,
            timeout=timeout,
            expected_exception=expected_exception
        )

        self.name = name or f"CircuitBreaker_{id(self)}"
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

        logger.info(f"Circuit breaker '{self.name}' initialized with threshold={failure_threshold}")

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine function performing the upstream call

        Returns:
            Whatever the operation returns

        Raises:
            CircuitOpenError: When the circuit is open, or half-open with a probe already in flight
            CircuitBreakerTimeoutError: When a configured timeout elapses
            Exception: Any exception raised by the operation
        """
        return await self.call(operation)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute ``func(*args, **kwargs)`` through the circuit breaker."""
        is_probe = await self._before_call()

        try:
            if self.config.timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
            else:
                result = await func(*args, **kwargs)

        except asyncio.TimeoutError:
            async with self._lock:
                self.metrics.timeout_requests += 1
                self._on_failure(is_probe, "timeout")
            logger.error(f"Circuit breaker '{self.name}' - request timed out after {self.config.timeout}s")
            raise CircuitBreakerTimeoutError(f"Request timed out after {self.config.timeout}s")

        except self.config.expected_exception as e:
            async with self._lock:
                self._on_failure(is_probe, str(e))
            raise

        except BaseException:
            # Cancellation or an exception we do not count: release the probe slot
            if is_probe:
                async with self._lock:
                    self._probe_in_flight = False
            raise

        async with self._lock:
            self._on_success(is_probe)
        return result

    async def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is the half-open probe."""
        async with self._lock:
            self.metrics.total_requests += 1

            if self.state == CircuitState.OPEN:
                elapsed = self._clock() - (self.last_failure_time or 0.0)
                if elapsed >= self.config.recovery_timeout:
                    self._transition_to_half_open()
                else:
                    self.metrics.rejected_requests += 1
                    logger.warning(f"Circuit breaker '{self.name}' is OPEN - failing fast")
                    raise CircuitOpenError(self.name, self.config.recovery_timeout - elapsed)

            if self.state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self.metrics.rejected_requests += 1
                    raise CircuitOpenError(self.name)
                self._probe_in_flight = True
                return True

            return False

    def _on_success(self, is_probe: bool):
        """Handle successful request. Caller holds the lock."""
        self.metrics.successful_requests += 1
        self.failure_count = 0

        if is_probe:
            self._probe_in_flight = False
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition_to_closed()

    def _on_failure(self, is_probe: bool, reason: str):
        """Handle failed request. Caller holds the lock."""
        self.metrics.failed_requests += 1
        self.failure_count += 1
        self.last_failure_time = self._clock()

        logger.error(f"Circuit breaker '{self.name}' - call failed: {reason}")

        if is_probe:
            self._probe_in_flight = False
            self._transition_to_open("Half-open probe failed")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._transition_to_open(
                f"Failure threshold reached ({self.failure_count}/{self.config.failure_threshold})"
            )

    def _transition_to_open(self, reason: str):
        old_state = self.state
        self.state = CircuitState.OPEN
        self.success_count = 0
        self.metrics.record_state_change(old_state, CircuitState.OPEN, reason)

        logger.warning(
            f"Circuit breaker '{self.name}' OPENED: {reason}. "
            f"Next probe allowed after {self.config.recovery_timeout}s"
        )

    def _transition_to_half_open(self):
        old_state = self.state
        self.state = CircuitState.HALF_OPEN
        self.success_count = 0
        self._probe_in_flight = False
        self.metrics.record_state_change(
            old_state, CircuitState.HALF_OPEN, "Recovery timeout reached, testing service availability"
        )

        logger.info(f"Circuit breaker '{self.name}' transitioned to HALF_OPEN for testing")

    def _transition_to_closed(self):
        old_state = self.state
        reason = f"Service recovered - {self.success_count} successful probe(s)"
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.metrics.record_state_change(old_state, CircuitState.CLOSED, reason)

        logger.info(f"Circuit breaker '{self.name}' CLOSED - service recovered")

    async def force_open(self, reason: str = "Manual override"):
        """Manually force the circuit breaker to OPEN state."""
        async with self._lock:
            self.last_failure_time = self._clock()
            self._transition_to_open(f"Manual: {reason}")

    async def force_closed(self, reason: str = "Manual override"):
        """Manually force the circuit breaker to CLOSED state."""
        async with self._lock:
            old_state = self.state
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self._probe_in_flight = False
            self.metrics.record_state_change(old_state, CircuitState.CLOSED, f"Manual: {reason}")

            logger.info(f"Circuit breaker '{self.name}' manually forced CLOSED: {reason}")

    def get_status(self) -> Dict[str, Any]:
        """Get current status and metrics."""
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'config': {
                'failure_threshold': self.config.failure_threshold,
                'recovery_timeout': self.config.recovery_timeout,
                'success_threshold': self.config.success_threshold,
                'timeout': self.config.timeout
            },
            'metrics': {
                'total_requests': self.metrics.total_requests,
                'successful_requests': self.metrics.successful_requests,
                'failed_requests': self.metrics.failed_requests,
                'timeout_requests': self.metrics.timeout_requests,
                'rejected_requests': self.metrics.rejected_requests,
                'success_rate': self.metrics.success_rate,
                'failure_rate': self.metrics.failure_rate,
                'state_changes': self.metrics.state_changes[-10:]  # Last 10 state changes
            }
        }

    def reset_metrics(self):
        """Reset all metrics (useful for testing)."""
        self.metrics = CircuitBreakerMetrics()
        logger.info(f"Circuit breaker '{self.name}' metrics reset")


class CircuitBreakerManager:
    """
    Registry of circuit breakers, one per upstream dependency.
    """

    def __init__(self):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def create_circuit_breaker(self, name: str, **kwargs) -> CircuitBreaker:
        """Create and register a new circuit breaker."""
        if name in self.circuit_breakers:
            raise ValueError(f"Circuit breaker '{name}' already exists")

        circuit_breaker = CircuitBreaker(name=name, **kwargs)
        self.circuit_breakers[name] = circuit_breaker
        logger.info(f"Created circuit breaker: {name}")
        return circuit_breaker

    def get_or_create(self, name: str, **kwargs) -> CircuitBreaker:
        """Return the registered breaker for ``name``, creating it on first use."""
        existing = self.circuit_breakers.get(name)
        if existing is not None:
            return existing
        return self.create_circuit_breaker(name, **kwargs)

    def get_circuit_breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self.circuit_breakers.get(name)

    def remove_circuit_breaker(self, name: str) -> bool:
        """Remove a circuit breaker."""
        if name in self.circuit_breakers:
            del self.circuit_breakers[name]
            logger.info(f"Removed circuit breaker: {name}")
            return True
        return False

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {
            name: cb.get_status()
            for name, cb in self.circuit_breakers.items()
        }

    def get_health_summary(self) -> Dict[str, Any]:
        """Get overall health summary of all circuit breakers."""
        total_cbs = len(self.circuit_breakers)
        open_cbs = sum(1 for cb in self.circuit_breakers.values() if cb.state == CircuitState.OPEN)
        half_open_cbs = sum(1 for cb in self.circuit_breakers.values() if cb.state == CircuitState.HALF_OPEN)
        closed_cbs = total_cbs - open_cbs - half_open_cbs

        return {
            'total_circuit_breakers': total_cbs,
            'closed': closed_cbs,
            'half_open': half_open_cbs,
            'open': open_cbs,
            'health_score': (closed_cbs + half_open_cbs * 0.5) / max(total_cbs, 1),
            'circuit_breakers': list(self.circuit_breakers.keys())
        }


# Process-wide registry, one breaker per upstream dependency
circuit_breaker_manager = CircuitBreakerManager()
