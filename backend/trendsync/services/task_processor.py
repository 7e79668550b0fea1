"""Trending task processor.

Claims pending SyncTasks and runs the enrichment pipeline for each one under a bounded pool.

Design notes:
 - The batch select is a plain read; the claim is an atomic conditional UPDATE
   (pending -> processing, attempts+1) and only the run whose UPDATE matched a row
   processes the task. Concurrent processor runs therefore never double-process a task.
 - One cache set, one monthly-watcher map per media type and one batch peak watcher
   count are shared by every task of the batch.
 - Each task is isolated: a failure marks only that task as error, and a failed claim or
   status write is logged and counted for that task without cancelling its siblings.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update

from trendsync.core.config import resolve_processor_limit, settings
from trendsync.core.database import get_session_factory
from trendsync.core.metrics import Timer, increment
from trendsync.models import SyncTask
from trendsync.schemas import parse_task_payload
from trendsync.services.async_pool import async_pool
from trendsync.services.cache import EnrichmentCaches
from trendsync.services.catalog import CatalogClients
from trendsync.services.enrichment import BatchContext, EntitySkipped, process_entity
from trendsync.services.monthly import build_monthly_maps
from trendsync.services.scoring import batch_max_watchers
from trendsync.utils.timezone import utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000

TASK_DONE = "done"
TASK_ERROR = "error"
TASK_SKIPPED = "skipped"
TASK_NOT_CLAIMED = "not_claimed"


@dataclass
class ProcessorResult:
    selected: int = 0
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


async def fetch_pending_tasks(session_factory, limit: int, media_type: Optional[str] = None) -> List[SyncTask]:
    stmt = select(SyncTask).where(SyncTask.status == "pending").order_by(SyncTask.created_at, SyncTask.id).limit(limit)
    if media_type is not None:
        stmt = stmt.where(SyncTask.media_type == media_type)
    async with session_factory() as session:
        return list((await session.execute(stmt)).scalars())


async def claim_task(session_factory, task_id: int) -> bool:
    """Atomically move a task from pending to processing; False if another run got it first."""
    async with session_factory() as session:
        async with session.begin():
            res = await session.execute(
                update(SyncTask)
                .where(SyncTask.id == task_id, SyncTask.status == "pending")
                .values(status="processing", attempts=SyncTask.attempts + 1, updated_at=utc_now())
            )
            return res.rowcount == 1


async def finish_task(session_factory, task_id: int, error: Optional[str] = None) -> None:
    values = {"status": TASK_ERROR if error else TASK_DONE, "last_error": error, "updated_at": utc_now()}
    async with session_factory() as session:
        async with session.begin():
            await session.execute(update(SyncTask).where(SyncTask.id == task_id).values(**values))


def _error_message(e: BaseException) -> str:
    message = str(e).strip() or type(e).__name__
    return message[:MAX_ERROR_LENGTH]


async def build_batch_context(clients: CatalogClients, session_factory, tasks: List[SyncTask]) -> BatchContext:
    ctx = BatchContext(caches=EnrichmentCaches(), session_factory=session_factory)
    for media_type in sorted({t.media_type for t in tasks}):
        ctx.monthly_maps[media_type] = await build_monthly_maps(clients, media_type)
    watchers = []
    for t in tasks:
        try:
            watchers.append(parse_task_payload(t.payload).watchers)
        except ValueError:
            continue
    ctx.max_watchers = batch_max_watchers(watchers)
    return ctx


async def _finish(session_factory, task: SyncTask, outcome: str, error: Optional[str] = None) -> str:
    """Record the task's final status; a failed write leaves the task in processing and counts as an error."""
    try:
        await finish_task(session_factory, task.id, error=error)
    except Exception as e:
        logger.error(f"Task {task.id} finished as {outcome} but its status could not be saved: {e}")
        return TASK_ERROR
    return outcome


async def _run_task(clients: CatalogClients, ctx: BatchContext, task: SyncTask) -> str:
    session_factory = ctx.session_factory
    try:
        claimed = await claim_task(session_factory, task.id)
    except Exception as e:
        logger.warning(f"Task {task.id} could not be claimed: {e}")
        return TASK_NOT_CLAIMED
    if not claimed:
        logger.debug(f"Task {task.id} was claimed by another run")
        return TASK_NOT_CLAIMED
    try:
        payload = parse_task_payload(task.payload)
        outcome = await process_entity(clients, ctx, payload)
    except EntitySkipped as e:
        logger.info(f"Task {task.id} skipped: {e}")
        return await _finish(session_factory, task, TASK_SKIPPED)
    except Exception as e:
        message = _error_message(e)
        logger.warning(f"Task {task.id} ({task.media_type}/{task.tmdb_id}) failed: {message}")
        return await _finish(session_factory, task, TASK_ERROR, error=message)
    logger.debug(f"Task {task.id} done: {outcome.title} score={outcome.trending_score}")
    return await _finish(session_factory, task, TASK_DONE)


async def run_trending_processor(
    clients: CatalogClients,
    limit: Optional[int] = None,
    concurrency: Optional[int] = None,
    media_type: Optional[str] = None,
    session_factory=None,
) -> ProcessorResult:
    """Process up to `limit` (1..50) pending tasks with `concurrency` entities in flight."""
    session_factory = session_factory or get_session_factory()
    limit = resolve_processor_limit(limit)
    concurrency = max(1, int(concurrency or settings.sync_concurrency))

    tasks = await fetch_pending_tasks(session_factory, limit, media_type)
    result = ProcessorResult(selected=len(tasks))
    if not tasks:
        logger.info("Trending processor: no pending tasks")
        return result

    ctx = await build_batch_context(clients, session_factory, tasks)

    async def run_one(task: SyncTask) -> str:
        return await _run_task(clients, ctx, task)

    async with Timer("processor.batch", warn_ms=10 * 60 * 1000):
        outcomes = await async_pool(concurrency, tasks, run_one)

    for outcome in outcomes:
        if outcome == TASK_NOT_CLAIMED:
            continue
        result.claimed += 1
        if outcome == TASK_ERROR:
            result.failed += 1
        else:
            result.succeeded += 1
            if outcome == TASK_SKIPPED:
                result.skipped += 1

    await increment("processor.succeeded", result.succeeded)
    await increment("processor.failed", result.failed)
    logger.info(
        f"Trending processor: {result.claimed}/{result.selected} claimed, "
        f"{result.succeeded} succeeded ({result.skipped} skipped), {result.failed} failed"
    )
    return result

