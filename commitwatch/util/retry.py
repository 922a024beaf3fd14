"""Retry with exponential backoff.

The policy knows nothing about what it retries: it wraps any zero-argument
coroutine factory and re-invokes it from scratch on failure, so the wrapped
unit must be safe to run again.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from commitwatch.util.logging import Logger

T = TypeVar("T")


class RetryError(Exception):
    """Raised when every attempt of a retried operation failed"""

    def __init__(self, context: str, attempts: int, last_error: Exception):
        super().__init__(f"{context} failed after {attempts} attempt(s): {last_error}")
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """Attempt budget and backoff schedule.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``
    seconds, capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    @classmethod
    def from_milliseconds(
        cls, max_attempts: int, base_delay_ms: int, max_delay_ms: int, sleep=asyncio.sleep
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay=base_delay_ms / 1000,
            max_delay=max_delay_ms / 1000,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "operation",
        logger: Optional[Logger] = None,
    ) -> T:
        """Run operation until it succeeds or the attempt budget is spent.

        Raises:
            RetryError: chained to the last failure once all attempts failed
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if logger:
                    logger.warning(f"Attempt {attempt}/{self.max_attempts} failed for {context}: {e}")

                if attempt < self.max_attempts:
                    await self.sleep(self.delay_for(attempt))

        raise RetryError(context, self.max_attempts, last_error) from last_error
