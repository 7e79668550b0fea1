"""
cache.py

Per-run memoization: an LRU cache with optional TTL and a cached-with-retry helper.
Caches live for one batch run and are never shared across runs or processes.
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable, Optional, Tuple

from trendsync.core.config import settings
from trendsync.core.metrics import increment
from trendsync.services.retry import with_retry, RetryObserver

logger = logging.getLogger(__name__)

_MISSING = object()


class LRUCache:
    """Fixed-capacity LRU; `get` and `set` both mark the key most-recently-used."""

    def __init__(self, max_size: int, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[Any, Optional[float]]]" = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            return default
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def delete(self, key: Hashable) -> bool:
        return self._data.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)


def retry_observer(func) -> RetryObserver:
    """Log each failed attempt and count it under retry.<function name>."""
    name = getattr(func, "__name__", type(func).__name__)

    async def observe(attempt: int, error: BaseException) -> None:
        logger.debug(f"{name} attempt {attempt} failed: {error}")
        await increment(f"retry.{name}")

    return observe


async def cached_with_retry(
    cache: LRUCache,
    key: Hashable,
    func: Callable[..., Awaitable[Any]],
    *args,
    retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    on_retry: Optional[RetryObserver] = None,
    **kwargs,
) -> Any:
    """Return the cached value for `key` (falsy values and None count as cached),
    otherwise run `func` under the retry policy, cache and return the result."""
    hit = cache.get(key, _MISSING)
    if hit is not _MISSING:
        return hit
    value = await with_retry(
        func,
        *args,
        retries=settings.retry_attempts if retries is None else retries,
        base_delay=settings.retry_base_delay if base_delay is None else base_delay,
        on_retry=on_retry or retry_observer(func),
        **kwargs,
    )
    cache.set(key, value)
    return value


@dataclass
class EnrichmentCaches:
    """One cache per upstream lookup, shared by every entity of a batch."""
    details: LRUCache = field(default_factory=lambda: LRUCache(300))
    translations: LRUCache = field(default_factory=lambda: LRUCache(300))
    videos: LRUCache = field(default_factory=lambda: LRUCache(300))
    credits: LRUCache = field(default_factory=lambda: LRUCache(300))
    external_ids: LRUCache = field(default_factory=lambda: LRUCache(400))
    providers: LRUCache = field(default_factory=lambda: LRUCache(400))
    content_ratings: LRUCache = field(default_factory=lambda: LRUCache(400))
    genres: LRUCache = field(default_factory=lambda: LRUCache(1000))
    ratings: LRUCache = field(default_factory=lambda: LRUCache(400, ttl=3600))
