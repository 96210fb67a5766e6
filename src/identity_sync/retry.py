"""Bounded exponential-backoff retry for provider calls.

Newly created upstream dependencies (a freshly minted identity, a role just
replicated) are not immediately visible to consumer APIs. The executor
therefore pays the base delay before the first attempt as well, then doubles
it before every subsequent attempt. Only ProviderErrors classified as
transient are retried; everything else propagates on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .provider import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when a transient failure persists through every attempt."""

    def __init__(self, operation: str, attempts: int, last_error: ProviderError) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryExecutor:
    """Runs an async call with bounded exponential backoff.

    Args:
        max_attempts: Total attempts, including the first.
        base_delay_seconds: Delay before the first attempt, doubled per attempt.
        max_delay_seconds: Optional cap for a single delay.
        delay_first_attempt: Whether the first attempt also waits.
    """

    def __init__(
        self,
        max_attempts: int,
        base_delay_seconds: float,
        *,
        max_delay_seconds: float | None = None,
        delay_first_attempt: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._max_delay_seconds = max_delay_seconds
        self._delay_first_attempt = delay_first_attempt

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the given 1-based attempt."""
        if attempt == 1 and not self._delay_first_attempt:
            return 0.0
        exponent = attempt - 1 if self._delay_first_attempt else attempt - 2
        delay = self._base_delay_seconds * (2**exponent)
        if self._max_delay_seconds is not None:
            delay = min(delay, self._max_delay_seconds)
        return delay

    async def run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Execute the call until it succeeds or attempts run out.

        Args:
            operation: Human-readable name for logging.
            call: Zero-argument coroutine factory, invoked once per attempt.

        Returns:
            The call's result.

        Raises:
            ProviderError: Immediately, for non-transient failures.
            RetryExhaustedError: When every attempt failed transiently.
        """
        attempt = 1
        while True:
            delay = self.delay_for(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

            try:
                return await call()
            except ProviderError as e:
                if not e.retryable:
                    raise
                if attempt >= self._max_attempts:
                    logger.error(
                        "Transient provider error persisted",
                        extra={"operation": operation, "attempts": attempt, "error": str(e)},
                    )
                    raise RetryExhaustedError(operation, attempt, e) from e
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "next_wait_seconds": self.delay_for(attempt + 1),
                        "error": str(e),
                    },
                )
            attempt += 1
