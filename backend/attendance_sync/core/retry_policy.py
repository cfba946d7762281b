"""
Retry with exponential backoff.

A failing operation is attempted at most ``max_retries + 1`` times. Between
attempts the policy sleeps for ``min(initial_delay * multiplier ** (attempt - 1), max_delay)``
seconds, raised to an upstream ``retry_after`` hint when the error carries one.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry parameters. Delays are in seconds."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_milliseconds(
        cls,
        max_retries: int,
        initial_delay_ms: int,
        max_delay_ms: int,
        backoff_multiplier: float
    ) -> "RetryConfig":
        return cls(
            max_retries=max_retries,
            initial_delay=initial_delay_ms / 1000.0,
            max_delay=max_delay_ms / 1000.0,
            backoff_multiplier=backoff_multiplier
        )


class RetryPolicy:
    """
    Retries one logical call.

    Args:
        config: Retry parameters
        should_retry: Predicate deciding whether an error is worth retrying (default: always)
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each sleep
        sleep: Coroutine used to wait between attempts
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = config or RetryConfig()
        if self.config.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.config.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

        self.should_retry = should_retry or (lambda error: True)
        self.on_retry = on_retry
        self._sleep = sleep

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        delay = self.config.initial_delay * (self.config.backoff_multiplier ** (attempt - 1))

        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))

        return min(delay, self.config.max_delay)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` until it succeeds or retries are exhausted.

        The error raised after the final attempt is the last one observed,
        with an ``attempts`` attribute recording how many invocations were made.
        """
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()

            except Exception as e:
                if attempt > self.config.max_retries or not self.should_retry(e):
                    e.attempts = attempt
                    if attempt > 1:
                        logger.warning(f"Giving up after {attempt} attempt(s): {e}")
                    raise

                delay = self.compute_delay(attempt, e)
                logger.info(
                    f"Retrying operation after error (attempt {attempt}/{self.config.max_retries + 1}, "
                    f"waiting {delay:.2f}s): {e}"
                )

                if self.on_retry is not None:
                    self.on_retry(attempt, e, delay)

                await self._sleep(delay)
