"""
Bounded exponential backoff for transient store failures
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ridehail.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    description: str = "store operation",
) -> T:
    """
    Run an async operation, retrying only TransientStoreError.

    Delay doubles after every failed attempt (base, 2*base, ...). Any other
    exception, PreconditionFailed included, propagates immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as e:
            if attempt == attempts:
                logger.error(
                    f"{description} failed after {attempts} attempts: {e.message}"
                )
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
