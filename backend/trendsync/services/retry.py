"""
retry.py

Exponential backoff with jitter for upstream calls.

Attempt 1 runs immediately; attempt k (k > 1) sleeps base_delay * 2**(k-2) plus up to
100ms of jitter first. After `retries` retries the last error is re-raised unchanged.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

JITTER_SECONDS = 0.1

RetryObserver = Callable[[int, BaseException], Any]


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Sleep before `attempt` (2-based): base_delay * 2**(attempt-2), without jitter."""
    return base_delay * (2 ** (attempt - 2))


async def with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    retries: int = 3,
    base_delay: float = 0.3,
    on_retry: Optional[RetryObserver] = None,
    **kwargs,
):
    """Call `await func(*args, **kwargs)` up to retries+1 times.

    `on_retry(attempt, error)` fires after every failed attempt, before sleeping.
    It may be sync or async; anything it raises is logged and ignored.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if on_retry is not None:
                await _notify(on_retry, attempt, e)
            if attempt > retries:
                raise
            delay = backoff_delay(attempt + 1, base_delay) + random.uniform(0, JITTER_SECONDS)
            logger.debug(f"Attempt {attempt}/{retries + 1} failed ({e}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)


async def _notify(observer: RetryObserver, attempt: int, error: BaseException) -> None:
    try:
        result = observer(attempt, error)
        if asyncio.iscoroutine(result):
            await result
    except Exception as obs_err:
        logger.debug(f"Retry observer failed: {obs_err}")
