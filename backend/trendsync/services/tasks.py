"""
tasks.py

Celery task definitions for the scheduled sync runs.
Each task runs its coroutine under asyncio.run() and holds a Redis run lock so two
overlapping beats of the same job never run side by side.
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from celery import shared_task

import trendsync.utils.logger  # noqa: F401  installs the trendsync log handler
from trendsync.core.database import dispose_engine
from trendsync.core.metrics import counters_snapshot
from trendsync.core.redis_client import close_redis, get_redis
from trendsync.services.backfill import run_metadata_backfill, run_ratings_backfill
from trendsync.services.calendar_sync import prune_calendar, run_calendar_sync
from trendsync.services.catalog import build_clients
from trendsync.services.jobs import get_task_stats, run_trending_coordinator
from trendsync.services.task_processor import run_trending_processor

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 60 * 30


class RunLockBusy(Exception):
    """Raised when a run lock cannot be acquired."""
    pass


class RunLock:
    """Redis-based lock for one named sync run."""

    def __init__(self, name: str, ttl: int = DEFAULT_LOCK_TTL):
        self.name = name
        self.ttl = ttl
        self.redis = get_redis()
        self.lock_key = f"lock:trendsync:{name}"

    async def acquire(self) -> bool:
        acquired = await self.redis.set(self.lock_key, "locked", ex=self.ttl, nx=True)
        if not acquired:
            logger.info(f"Lock already held: {self.lock_key}")
        return bool(acquired)

    async def release(self):
        await self.redis.delete(self.lock_key)

    async def __aenter__(self):
        if not await self.acquire():
            raise RunLockBusy(f"Could not acquire lock: {self.lock_key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


def _run_locked(lock_name: str, operation, ttl: int = DEFAULT_LOCK_TTL) -> dict:
    """Run `operation(clients)` in a fresh event loop under a run lock.

    Returns the operation's result as a dict, or a "skipped" status when the lock is taken.
    """
    async def _run():
        try:
            async with RunLock(lock_name, ttl=ttl):
                result = await operation(build_clients())
                return {"status": "ok", **asdict(result)}
        except RunLockBusy:
            return {"status": "skipped", "reason": "locked"}
        finally:
            await dispose_engine()
            await close_redis()

    return asyncio.run(_run())


@shared_task(name="trendsync.services.tasks.sync_trending_shows")
def sync_trending_shows(limit: Optional[int] = None) -> dict:
    """Coordinator: queue this run's trending shows."""
    try:
        return _run_locked("coordinator:show", lambda clients: run_trending_coordinator(clients, "show", limit))
    except Exception as e:
        logger.exception(f"Trending show coordinator failed: {e}")
        raise


@shared_task(name="trendsync.services.tasks.sync_trending_movies")
def sync_trending_movies(limit: Optional[int] = None) -> dict:
    """Coordinator: queue this run's trending movies."""
    try:
        return _run_locked("coordinator:movie", lambda clients: run_trending_coordinator(clients, "movie", limit))
    except Exception as e:
        logger.exception(f"Trending movie coordinator failed: {e}")
        raise


@shared_task(name="trendsync.services.tasks.process_trending_tasks")
def process_trending_tasks(limit: Optional[int] = None, concurrency: Optional[int] = None) -> dict:
    # Claims are atomic, so the lock only keeps beats from piling up
    return _run_locked(
        "processor",
        lambda clients: run_trending_processor(clients, limit=limit, concurrency=concurrency),
        ttl=60 * 15,
    )


@shared_task(name="trendsync.services.tasks.sync_calendar")
def sync_calendar(days: Optional[int] = None) -> dict:
    return _run_locked("calendar", lambda clients: run_calendar_sync(clients, days=days))


@shared_task(name="trendsync.services.tasks.prune_calendar_airings")
def prune_calendar_airings(limit: Optional[int] = None) -> dict:
    async def _run():
        try:
            deleted = await prune_calendar(limit=limit)
            return {"status": "ok", "deleted": deleted}
        finally:
            await dispose_engine()
            await close_redis()

    return asyncio.run(_run())


@shared_task(name="trendsync.services.tasks.backfill_ratings")
def backfill_ratings(limit: Optional[int] = None) -> dict:
    return _run_locked("backfill:ratings", lambda clients: run_ratings_backfill(clients, limit=limit))


@shared_task(name="trendsync.services.tasks.backfill_metadata")
def backfill_metadata(media_type: str = "show", limit: Optional[int] = None) -> dict:
    return _run_locked(
        f"backfill:metadata:{media_type}",
        lambda clients: run_metadata_backfill(clients, media_type=media_type, limit=limit),
    )


@shared_task(name="trendsync.services.tasks.report_sync_status")
def report_sync_status(job_id: Optional[int] = None) -> dict:
    """Task counts per status plus Redis counters; jobs never reach a terminal state on their own."""
    async def _run():
        try:
            return {"tasks": await get_task_stats(job_id=job_id), "counters": await counters_snapshot()}
        finally:
            await dispose_engine()
            await close_redis()

    return asyncio.run(_run())
