"""
calendar_sync.py

Upcoming-episode calendar for shows already in the trending catalog.

Only "eligible" shows are tracked: a show needs both a trending score and a Trakt
community rating. Sync upserts airings keyed by (tmdb_id, season, episode); prune
removes airings whose show is gone or no longer eligible.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import and_, delete, or_, select

from trendsync.core.config import resolve_calendar_days, settings
from trendsync.core.database import get_session_factory
from trendsync.models import MediaItem, ShowAiring
from trendsync.schemas import TraktCalendarEntry
from trendsync.services.catalog import CatalogClients
from trendsync.services.jobs import create_job, update_job_stats
from trendsync.services.retry import with_retry
from trendsync.utils.timezone import parse_iso_datetime, today_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CalendarSyncResult:
    processed: int = 0
    inserted: int = 0
    updated: int = 0


def _eligible_clause():
    return and_(
        MediaItem.media_type == "show",
        MediaItem.trending_score.isnot(None),
        MediaItem.rating_trakt.isnot(None),
    )


async def eligible_shows(session_factory) -> Dict[int, int]:
    """{tmdb_id: media_item_id} for shows with a trend signal and a community rating."""
    async with session_factory() as session:
        rows = await session.execute(select(MediaItem.tmdb_id, MediaItem.id).where(_eligible_clause()))
        return {tmdb_id: item_id for tmdb_id, item_id in rows.all()}


async def _upsert_airing(session, entry: TraktCalendarEntry, tmdb_id: int, media_item_id: Optional[int]) -> bool:
    """Returns True when a new row was inserted."""
    season, number = entry.episode.season, entry.episode.number
    row = (await session.execute(
        select(ShowAiring).where(
            ShowAiring.tmdb_id == tmdb_id,
            ShowAiring.season == season,
            ShowAiring.episode == number,
        )
    )).scalar_one_or_none()
    values = {
        "media_item_id": media_item_id,
        "trakt_id": entry.show.ids.trakt,
        "title": entry.show.title,
        "episode_title": entry.episode.title,
        "air_date": parse_iso_datetime(entry.first_aired),
        "network": entry.show.network,
    }
    if row is None:
        session.add(ShowAiring(tmdb_id=tmdb_id, season=season, episode=number, **values))
        return True
    for key, value in values.items():
        if value is None and key in ("title", "network", "episode_title", "trakt_id"):
            continue
        setattr(row, key, value)
    row.updated_at = utc_now()
    return False


async def run_calendar_sync(
    clients: CatalogClients,
    days: Optional[int] = None,
    session_factory=None,
    record_job: bool = True,
) -> CalendarSyncResult:
    """Fetch airings for [today, today + days) and upsert those of eligible shows."""
    session_factory = session_factory or get_session_factory()
    days = resolve_calendar_days(days)
    start = today_iso()
    job_id = await create_job(session_factory, "calendar") if record_job else None

    eligible = await eligible_shows(session_factory)
    entries = await with_retry(
        clients.trakt.get_calendar_shows, start, days,
        retries=settings.retry_attempts, base_delay=settings.retry_base_delay,
    )

    result = CalendarSyncResult()
    for entry in entries:
        tmdb_id = entry.show.ids.tmdb
        if tmdb_id is None or tmdb_id not in eligible:
            continue
        try:
            async with session_factory() as session:
                async with session.begin():
                    inserted = await _upsert_airing(session, entry, tmdb_id, eligible[tmdb_id])
        except Exception as e:
            logger.warning(f"Calendar upsert failed for {tmdb_id} S{entry.episode.season}E{entry.episode.number}: {e}")
            continue
        result.processed += 1
        if inserted:
            result.inserted += 1
        else:
            result.updated += 1

    logger.info(
        f"Calendar sync {start} +{days}d: {len(entries)} airings, {result.processed} processed, "
        f"{result.inserted} inserted, {result.updated} updated"
    )
    if job_id is not None:
        await update_job_stats(session_factory, job_id, {
            "airings_fetched": len(entries),
            "processed": result.processed,
            "inserted": result.inserted,
            "updated": result.updated,
        })
    return result


async def prune_calendar(session_factory=None, limit: Optional[int] = None) -> int:
    """Delete up to `limit` (default 500) airings whose show is missing or no longer eligible."""
    session_factory = session_factory or get_session_factory()
    limit = limit or settings.calendar_prune_limit
    async with session_factory() as session:
        async with session.begin():
            stale_ids = list((await session.execute(
                select(ShowAiring.id)
                .outerjoin(MediaItem, and_(MediaItem.tmdb_id == ShowAiring.tmdb_id, MediaItem.media_type == "show"))
                .where(or_(
                    MediaItem.id.is_(None),
                    MediaItem.trending_score.is_(None),
                    MediaItem.rating_trakt.is_(None),
                ))
                .limit(limit)
            )).scalars())
            if not stale_ids:
                return 0
            await session.execute(delete(ShowAiring).where(ShowAiring.id.in_(stale_ids)))
    logger.info(f"Calendar prune removed {len(stale_ids)} airings")
    return len(stale_ids)
