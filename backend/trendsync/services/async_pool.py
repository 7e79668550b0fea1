"""
async_pool.py

Bounded async map: at most `limit` coroutines in flight, results returned in input order.
"""
import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def async_pool(limit: int, items: Iterable[T], mapper: Callable[[T], Awaitable[R]]) -> List[R]:
    """Run `mapper` over `items` with a concurrency ceiling of `limit`.

    The i-th result corresponds to the i-th item regardless of completion order.
    The first mapper error propagates; mappers still running are cancelled.
    Callers that need per-item isolation must catch inside the mapper.
    """
    if limit < 1:
        raise ValueError(f"async_pool limit must be >= 1, got {limit}")
    items = list(items)
    if not items:
        return []

    semaphore = asyncio.Semaphore(limit)

    async def run_one(item: T) -> R:
        async with semaphore:
            return await mapper(item)

    tasks = [asyncio.ensure_future(run_one(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
