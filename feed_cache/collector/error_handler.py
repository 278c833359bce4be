"""Retry logic with exponential backoff for fetch operations."""

import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from feed_cache.clock import Clock
from feed_cache.errors import FetchError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int,
    initial_backoff: float = 1.0,
    backoff_factor: float = 2.0,
    max_backoff: Optional[float] = None,
    clock: Optional[Clock] = None,
    retry_on: Tuple[Type[BaseException], ...] = (FetchError,),
    label: str = "request",
) -> T:
    """
    Call ``func`` until it succeeds or ``max_retries`` retries are used up.

    The delay before retry ``n`` (0-based) is ``initial_backoff * backoff_factor**n``,
    capped at ``max_backoff`` when given.

    Args:
        func: Zero-argument coroutine function to call
        max_retries: Retries allowed after the first attempt (0 means one attempt)
        initial_backoff: Delay in seconds before the first retry
        backoff_factor: Multiplier for the delay between retries
        max_backoff: Optional upper bound for a single delay
        clock: Clock used for the delays
        retry_on: Exception types that trigger a retry; anything else propagates at once
        label: Name used in log messages

    Returns:
        Whatever ``func`` returns on its first successful call

    Raises:
        The last exception raised by ``func`` once retries are exhausted
    """
    clock = clock or Clock()
    retries = 0
    backoff = initial_backoff

    while True:
        try:
            return await func()
        except retry_on as e:
            if retries >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded for {label}: {e}")
                raise

            if isinstance(e, RateLimited):
                logger.warning(f"Rate limited (429) on {label}. Retrying in {backoff:.2f}s")
            else:
                logger.warning(
                    f"Error on {label}: {e}. "
                    f"Retrying in {backoff:.2f}s ({retries + 1}/{max_retries})"
                )
            await clock.sleep(backoff)
            retries += 1
            backoff = backoff * backoff_factor
            if max_backoff is not None:
                backoff = min(backoff, max_backoff)
