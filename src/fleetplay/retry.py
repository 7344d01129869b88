"""Connection retry with exponential backoff.

Only transport-level failures (``HostConnectionError``) are retried. When the
attempts run out the failure becomes ``UnreachableHost`` and the host is
excluded from the rest of the run.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .exceptions import ErrorTypes, HostConnectionError, UnreachableHost

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = {ErrorTypes.CONNECTION_ERROR}


def should_retry(error_type: str) -> bool:
    """Check if an error classification is worth retrying."""
    return error_type in RETRYABLE_ERRORS


@dataclass
class RetryConfig:
    """Configuration for connection retries.

    Attributes:
        max_attempts: Retries after the first attempt (0 = no retries)
        initial_delay: Delay before the first retry in seconds
        max_delay: Cap on the backoff delay
        backoff_factor: Multiplier per attempt
        jitter: Add +/-10% random jitter to each delay
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` (1-based) failed."""
        if attempt <= 1:
            delay = self.initial_delay
        else:
            delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay += delay * 0.1 * (random.random() * 2 - 1)
        return max(0.0, delay)


async def retry_connection(
    coro_factory: Callable[[], Awaitable[T]],
    config: RetryConfig,
    host_name: str = "",
) -> T:
    """Await ``coro_factory()`` retrying on HostConnectionError.

    Args:
        coro_factory: Callable returning a fresh coroutine per attempt
        config: Retry configuration
        host_name: Host name for logging and the raised error

    Returns:
        Whatever the coroutine returns

    Raises:
        UnreachableHost: When every attempt failed with a connection error
    """
    last_error = ""
    max_total_attempts = config.max_attempts + 1

    for attempt in range(1, max_total_attempts + 1):
        try:
            result = await coro_factory()
        except HostConnectionError as e:
            last_error = str(e)
            if attempt < max_total_attempts and should_retry(e.error_type):
                delay = config.get_delay(attempt)
                logger.info(
                    f"Retry {attempt}/{config.max_attempts} for {host_name}: "
                    f"{e.error_type} - waiting {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue
            logger.warning(f"Giving up on {host_name} after {attempt} attempt(s): {e}")
            raise UnreachableHost(host_name, e.message, attempts=attempt) from e
        return result

    raise UnreachableHost(host_name, last_error, attempts=max_total_attempts)
