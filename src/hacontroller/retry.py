"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


async def retry_with_backoff[T](
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay: float = 0.1,
    max_delay: float = 10.0,
    jitter: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        func: Async function to retry
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries
        jitter: Random jitter factor (0-1)
        retry_on: Exception types that trigger a retry; anything else propagates
        label: Name of the operation used in log messages

    Returns:
        Result of the function

    Raises:
        The last exception if all attempts fail
    """
    last_error: BaseException | None = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except retry_on as e:
            last_error = e

            if attempt == max_attempts - 1:
                break

            delay = min(base_delay * (2**attempt), max_delay)
            if jitter > 0:
                delay = delay * (1 + random.uniform(-jitter, jitter))

            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label,
                attempt + 1,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    logger.warning("%s failed after %d attempts: %s", label, max_attempts, last_error)
    raise last_error
