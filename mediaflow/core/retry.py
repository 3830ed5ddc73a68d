"""Retry configuration with exponential backoff.

Used at the point of use for transient infrastructure errors (object-store
I/O, event transport) and by the consumer-level redelivery policy.
"""

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Optional, TypeVar

from mediaflow.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


# Default retry configurations per stage
RETRY_CONFIGS = {
    "storage": RetryConfig(
        max_attempts=settings.STORAGE_RETRY_MAX_ATTEMPTS,
        initial_delay=settings.STORAGE_RETRY_INITIAL_DELAY,
        max_delay=settings.STORAGE_RETRY_MAX_DELAY,
        backoff_multiplier=settings.STORAGE_RETRY_BACKOFF_MULTIPLIER,
    ),
    "event_handler": RetryConfig(
        max_attempts=settings.EVENT_RETRY_MAX_ATTEMPTS,
        initial_delay=settings.EVENT_RETRY_INITIAL_DELAY,
        max_delay=settings.EVENT_RETRY_MAX_DELAY,
        backoff_multiplier=settings.EVENT_RETRY_BACKOFF_MULTIPLIER,
    ),
    "event_publish": RetryConfig(
        max_attempts=settings.EVENT_PUBLISH_RETRY_MAX_ATTEMPTS,
        initial_delay=settings.EVENT_PUBLISH_RETRY_INITIAL_DELAY,
        max_delay=settings.EVENT_PUBLISH_RETRY_MAX_DELAY,
        backoff_multiplier=settings.EVENT_PUBLISH_RETRY_BACKOFF_MULTIPLIER,
    ),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


class RetryExhaustedError(Exception):
    """Raised when an operation keeps failing after all attempts."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    operation: Optional[str] = None,
    **kwargs: Any,
) -> T:
    """Await func(*args, **kwargs), retrying transient failures with backoff.

    Args:
        func: Coroutine function to call
        config: Retry configuration (defaults to RETRY_CONFIGS["default"])
        retry_on: Exception types considered transient
        operation: Name used in logs and in the raised error

    Returns:
        Result of the first successful call

    Raises:
        RetryExhaustedError: If every attempt failed with a transient error
    """
    config = config or RETRY_CONFIGS["default"]
    operation = operation or getattr(func, "__name__", "operation")
    attempts = max(config.max_attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= attempts:
                raise RetryExhaustedError(operation, attempt, e) from e

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}",
                extra={"operation": operation, "attempt": attempt},
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
