"""
jobs.py

Job coordinator: creates a SyncJob, pulls the trending batch and enqueues one pending
SyncTask per candidate. Re-enqueueing the same candidate into the same job is a no-op.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from trendsync.core.config import settings
from trendsync.core.database import get_session_factory
from trendsync.core.metrics import increment
from trendsync.models import JOB_KINDS, TASK_STATUSES, SyncJob, SyncTask
from trendsync.schemas import TraktTrendingItem, build_task_payload
from trendsync.services.catalog import CatalogClients
from trendsync.services.retry import with_retry
from trendsync.utils.timezone import utc_now

logger = logging.getLogger(__name__)


def job_kind_for(media_type: str) -> str:
    return "trending-movies" if media_type == "movie" else "trending-shows"


@dataclass
class CoordinatorResult:
    job_id: int
    trending_fetched: int
    tasks_queued: int


async def create_job(session_factory, kind: str) -> int:
    if kind not in JOB_KINDS:
        raise ValueError(f"Unknown job kind: {kind}")
    async with session_factory() as session:
        async with session.begin():
            job = SyncJob(kind=kind, status="running", stats=json.dumps({}))
            session.add(job)
            await session.flush()
            return job.id


async def update_job_stats(session_factory, job_id: int, stats: Dict[str, int]) -> None:
    """Merge counters into the job's stats. Status is left as-is."""
    async with session_factory() as session:
        async with session.begin():
            job = await session.get(SyncJob, job_id)
            if job is None:
                return
            merged = job.stats_dict()
            merged.update(stats)
            job.stats = json.dumps(merged)
            job.updated_at = utc_now()


def _task_rows(job_id: int, media_type: str, items: List[TraktTrendingItem]) -> List[SyncTask]:
    rows = []
    for item in items:
        payload = build_task_payload(media_type, item)
        rows.append(SyncTask(
            job_id=job_id,
            tmdb_id=item.media.ids.tmdb,
            media_type=media_type,
            payload=payload.model_dump_json(),
            status="pending",
            attempts=0,
        ))
    return rows


async def enqueue_tasks(session_factory, job_id: int, media_type: str, items: List[TraktTrendingItem]) -> int:
    """Bulk insert pending tasks; on conflict fall back to row-by-row, skipping duplicates."""
    if not items:
        return 0
    try:
        async with session_factory() as session:
            async with session.begin():
                session.add_all(_task_rows(job_id, media_type, items))
        return len(items)
    except IntegrityError as e:
        logger.info(f"Bulk enqueue for job {job_id} hit a conflict, inserting individually: {e.orig}")

    queued = 0
    for row in _task_rows(job_id, media_type, items):
        try:
            async with session_factory() as session:
                async with session.begin():
                    session.add(row)
            queued += 1
        except IntegrityError:
            logger.debug(f"Task for {media_type}/{row.tmdb_id} already queued in job {job_id}")
    return queued


async def run_trending_coordinator(
    clients: CatalogClients,
    media_type: str = "show",
    limit: Optional[int] = None,
    session_factory=None,
) -> CoordinatorResult:
    """Create a job, fetch trending candidates and queue a task for each one with a TMDB id.

    Upstream failures here propagate to the caller; the job row keeps status "running".
    """
    session_factory = session_factory or get_session_factory()
    limit = limit or settings.trending_batch_size
    job_id = await create_job(session_factory, job_kind_for(media_type))

    trending = await with_retry(
        clients.trakt.get_trending, media_type, limit,
        retries=settings.retry_attempts, base_delay=settings.retry_base_delay,
    )
    candidates = [item for item in trending if item.media.ids.tmdb is not None]
    queued = await enqueue_tasks(session_factory, job_id, media_type, candidates)

    await update_job_stats(session_factory, job_id, {"trending_fetched": len(trending), "tasks_queued": queued})
    await increment(f"coordinator.{media_type}.queued", queued)
    logger.info(f"Job {job_id} ({job_kind_for(media_type)}): fetched {len(trending)} trending, queued {queued} tasks")
    return CoordinatorResult(job_id=job_id, trending_fetched=len(trending), tasks_queued=queued)


async def get_task_stats(session_factory=None, job_id: Optional[int] = None) -> Dict[str, int]:
    """Task counts per status, for one job or across all jobs."""
    session_factory = session_factory or get_session_factory()
    stmt = select(SyncTask.status, func.count(SyncTask.id)).group_by(SyncTask.status)
    if job_id is not None:
        stmt = stmt.where(SyncTask.job_id == job_id)
    async with session_factory() as session:
        rows = (await session.execute(stmt)).all()
    stats = {status: 0 for status in TASK_STATUSES}
    for status, count in rows:
        stats[status] = int(count)
    stats["total"] = sum(stats.values())
    return stats
