from __future__ import annotations
import logging
import time
from typing import Dict, Optional

from trendsync.core.config import settings
from trendsync.core.redis_client import get_redis

logger = logging.getLogger(__name__)

COUNTERS_KEY = "trendsync:metrics:counters"


async def increment(name: str, amount: int = 1) -> None:
    if not settings.metrics_enabled:
        return
    try:
        await get_redis().hincrby(COUNTERS_KEY, name, amount)
    except Exception as e:
        logger.debug(f"Metrics increment {name} failed: {e}")


def _latency_key(name: str) -> str:
    return f"trendsync:metrics:latency:{name}"


async def timing(name: str, milliseconds: float) -> None:
    """Record latency aggregates (count/sum/min/max) under one hash per name."""
    if not settings.metrics_enabled:
        return
    key = _latency_key(name)
    ms = float(milliseconds)
    r = get_redis()
    try:
        pipe = r.pipeline()
        pipe.hincrby(key, "count", 1)
        pipe.hincrbyfloat(key, "sum", ms)
        pipe.hmget(key, "min", "max")
        _, _, (cur_min, cur_max) = await pipe.execute()
        updates = {}
        if cur_min is None or ms < float(cur_min):
            updates["min"] = ms
        if cur_max is None or ms > float(cur_max):
            updates["max"] = ms
        if updates:
            await r.hset(key, mapping=updates)
    except Exception as e:
        logger.debug(f"Metrics timing {name} failed: {e}")


async def counters_snapshot() -> Dict[str, int]:
    out: Dict[str, int] = {}
    if not settings.metrics_enabled:
        return out
    try:
        data = await get_redis().hgetall(COUNTERS_KEY)
        for k, v in (data or {}).items():
            try:
                out[str(k)] = int(v)
            except (TypeError, ValueError):
                out[str(k)] = 0
    except Exception as e:
        logger.debug(f"Metrics snapshot failed: {e}")
    return out


class Timer:
    """Async timing block: logs a warning past `warn_ms` and records latency.

        async with Timer("processor.batch", warn_ms=60000):
            ...
    """

    def __init__(self, name: str, warn_ms: Optional[float] = None):
        self.name = name
        self.warn_ms = warn_ms
        self.elapsed_ms: float = 0.0
        self._start: Optional[float] = None

    async def __aenter__(self):
        self._start = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._start is None:
            return False
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
        if self.warn_ms is not None and self.elapsed_ms > self.warn_ms:
            logger.warning(f"[perf] {self.name} took {self.elapsed_ms:.0f}ms")
        else:
            logger.debug(f"[perf] {self.name} took {self.elapsed_ms:.0f}ms")
        await timing(self.name, self.elapsed_ms)
        return False
