"""Backfill sweeps for catalog rows with gaps.

Responsible for:
 1. Ratings: OMDb critic ratings for items with an IMDb id that miss IMDb rating,
    Metacritic score or IMDb vote count (skipped entirely without an OMDb key).
 2. Metadata: TMDB details/videos/providers/content rating for items missing any
    required display field.

Design notes:
 - Merge is field-by-field "new value or keep old"; nothing is ever blanked.
 - Each row commits on its own; a failing row is logged and counted, never raised.
 - Rows are visited oldest-updated first and touched on every visit, so rows that
   can never be completed (e.g. no Metacritic score exists) rotate out of the window.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import or_, select

from trendsync.core.config import settings
from trendsync.core.database import get_session_factory
from trendsync.models import MediaItem
from trendsync.services.catalog import CatalogClients
from trendsync.services.enrichment import merge_providers, select_videos
from trendsync.services.jobs import create_job, update_job_stats
from trendsync.services.retry import with_retry
from trendsync.services.scoring import primary_rating
from trendsync.services.upserts import (
    dumps,
    upsert_content_ratings,
    upsert_provider_registry,
    upsert_rating,
    upsert_videos,
    upsert_watch_providers,
)
from trendsync.utils.timezone import utc_now

logger = logging.getLogger(__name__)

SHOW_REQUIRED_FIELDS = (
    "backdrop_path", "genres", "videos", "number_of_seasons", "number_of_episodes",
    "latest_season_number", "latest_season_episodes", "status", "first_air_date",
)
MOVIE_REQUIRED_FIELDS = ("backdrop_path", "genres", "videos", "status", "release_date", "runtime")
EMPTY_JSON_ARRAY = "[]"


@dataclass
class BackfillResult:
    selected: int = 0
    updated: int = 0
    failed: int = 0


def _retry(func, *args):
    return with_retry(func, *args, retries=settings.retry_attempts, base_delay=settings.retry_base_delay)


def _keep(new, old):
    return new if new is not None else old


# --- ratings -----------------------------------------------------------------

async def _select_missing_ratings(session_factory, limit: int) -> List[MediaItem]:
    async with session_factory() as session:
        rows = await session.execute(
            select(MediaItem)
            .where(
                MediaItem.imdb_id.isnot(None),
                or_(
                    MediaItem.rating_imdb.is_(None),
                    MediaItem.rating_metacritic.is_(None),
                    MediaItem.imdb_votes.is_(None),
                ),
            )
            .order_by(MediaItem.updated_at.asc(), MediaItem.id.asc())
            .limit(limit)
        )
        return list(rows.scalars())


async def run_ratings_backfill(clients: CatalogClients, limit: Optional[int] = None, session_factory=None) -> BackfillResult:
    result = BackfillResult()
    if not clients.omdb.enabled:
        logger.info("Ratings backfill skipped: OMDb API key not configured")
        return result
    session_factory = session_factory or get_session_factory()
    limit = limit or settings.ratings_backfill_limit
    job_id = await create_job(session_factory, "backfill-ratings")

    items = await _select_missing_ratings(session_factory, limit)
    result.selected = len(items)
    for item in items:
        try:
            ratings = await _retry(clients.omdb.get_ratings, item.imdb_id)
            async with session_factory() as session:
                async with session.begin():
                    row = await session.get(MediaItem, item.id)
                    if row is None:
                        continue
                    row.updated_at = utc_now()
                    if ratings is None or ratings.is_empty:
                        continue
                    row.rating_imdb = _keep(ratings.imdb_rating, row.rating_imdb)
                    row.imdb_votes = _keep(ratings.imdb_votes, row.imdb_votes)
                    row.rating_metacritic = _keep(ratings.metacritic, row.rating_metacritic)
                    row.rating_rotten_tomatoes = _keep(ratings.rotten_tomatoes, row.rating_rotten_tomatoes)
                    row.primary_rating = primary_rating(row.rating_tmdb, row.rating_trakt, row.rating_imdb)
                    await upsert_rating(session, row.id, "imdb", ratings.imdb_rating, ratings.imdb_votes)
                    await upsert_rating(session, row.id, "metacritic", ratings.metacritic, None)
            result.updated += 1
        except Exception as e:
            result.failed += 1
            logger.debug(f"Ratings backfill failed for {item.imdb_id}: {e}")

    logger.info(f"Ratings backfill: {result.selected} selected, {result.updated} updated, {result.failed} failed")
    await update_job_stats(session_factory, job_id, {"selected": result.selected, "updated": result.updated, "failed": result.failed})
    return result


# --- metadata ----------------------------------------------------------------

def required_fields(media_type: str):
    return MOVIE_REQUIRED_FIELDS if media_type == "movie" else SHOW_REQUIRED_FIELDS


def _missing_clause(media_type: str):
    clauses = []
    for name in required_fields(media_type):
        column = getattr(MediaItem, name)
        clauses.append(column.is_(None))
        if name in ("genres", "videos"):
            clauses.append(column == EMPTY_JSON_ARRAY)
    return or_(*clauses)


async def _select_missing_metadata(session_factory, media_type: str, limit: int) -> List[MediaItem]:
    async with session_factory() as session:
        rows = await session.execute(
            select(MediaItem)
            .where(MediaItem.media_type == media_type, _missing_clause(media_type))
            .order_by(MediaItem.updated_at.asc(), MediaItem.id.asc())
            .limit(limit)
        )
        return list(rows.scalars())


async def _optional(label: str, coro, default=None):
    try:
        return await coro
    except Exception as e:
        logger.debug(f"Backfill fetch {label} failed: {e}")
        return default


def merged_metadata(row: MediaItem, details, videos) -> Dict[str, object]:
    """Column updates for a row: fresh values where TMDB has them, stored values otherwise."""
    genres = dumps([g.model_dump() for g in details.genres]) if details.genres else None
    video_json = dumps([{"site": v.site, "key": v.key, "name": v.name, "type": v.type} for v in videos]) if videos else None
    updates = {
        "backdrop_path": _keep(details.backdrop_path, row.backdrop_path),
        "poster_path": _keep(details.poster_path, row.poster_path),
        "overview": _keep(details.overview, row.overview),
        "genres": _keep(genres, row.genres),
        "videos": _keep(video_json, row.videos),
        "status": _keep(details.status, row.status),
        "tagline": _keep(details.tagline, row.tagline),
    }
    if row.media_type == "movie":
        updates.update({
            "release_date": _keep(details.release_date, row.release_date),
            "runtime": _keep(details.runtime, row.runtime),
        })
    else:
        latest = details.latest_season
        last_ep = details.last_episode_to_air
        next_ep = details.next_episode_to_air
        updates.update({
            "first_air_date": _keep(details.first_air_date, row.first_air_date),
            "number_of_seasons": _keep(details.number_of_seasons, row.number_of_seasons),
            "number_of_episodes": _keep(details.number_of_episodes, row.number_of_episodes),
            "latest_season_number": _keep(latest.season_number if latest else None, row.latest_season_number),
            "latest_season_episodes": _keep(latest.episode_count if latest else None, row.latest_season_episodes),
            "last_episode_season": _keep(last_ep.season_number if last_ep else None, row.last_episode_season),
            "last_episode_number": _keep(last_ep.episode_number if last_ep else None, row.last_episode_number),
            "last_episode_air_date": _keep(last_ep.air_date if last_ep else None, row.last_episode_air_date),
            "next_episode_season": _keep(next_ep.season_number if next_ep else None, row.next_episode_season),
            "next_episode_number": _keep(next_ep.episode_number if next_ep else None, row.next_episode_number),
            "next_episode_air_date": _keep(next_ep.air_date if next_ep else None, row.next_episode_air_date),
        })
    return updates


async def _backfill_metadata_row(clients: CatalogClients, item: MediaItem, session_factory) -> None:
    media_type, tmdb_id = item.media_type, item.tmdb_id
    details = await _retry(clients.tmdb.get_details, media_type, tmdb_id)
    videos, providers_by_region, content_rating = await asyncio.gather(
        _optional("videos", _retry(clients.tmdb.get_videos, media_type, tmdb_id), []),
        asyncio.gather(*(
            _optional(f"providers.{region}", _retry(clients.tmdb.get_watch_providers, media_type, tmdb_id, region), [])
            for region in settings.regions
        )),
        _optional("content_rating", _retry(clients.tmdb.get_content_rating, media_type, tmdb_id, settings.primary_region)),
    )
    videos = select_videos(videos or [])
    providers = merge_providers(*providers_by_region)

    async with session_factory() as session:
        async with session.begin():
            row = await session.get(MediaItem, item.id)
            if row is None:
                return
            for key, value in merged_metadata(row, details, videos).items():
                setattr(row, key, value)
            row.content_rating = _keep(content_rating, row.content_rating)
            row.updated_at = utc_now()
            await upsert_videos(session, row.id, videos)
            await upsert_provider_registry(session, providers)
            await upsert_watch_providers(session, row.id, providers)
            await upsert_content_ratings(session, row.id, {settings.primary_region: content_rating})


async def run_metadata_backfill(
    clients: CatalogClients,
    media_type: str = "show",
    limit: Optional[int] = None,
    session_factory=None,
) -> BackfillResult:
    session_factory = session_factory or get_session_factory()
    limit = limit or settings.metadata_backfill_limit
    job_id = await create_job(session_factory, "backfill-metadata")

    items = await _select_missing_metadata(session_factory, media_type, limit)
    result = BackfillResult(selected=len(items))
    for item in items:
        try:
            await _backfill_metadata_row(clients, item, session_factory)
            result.updated += 1
        except Exception as e:
            result.failed += 1
            logger.debug(f"Metadata backfill failed for {media_type}/{item.tmdb_id}: {e}")

    logger.info(
        f"Metadata backfill ({media_type}): {result.selected} selected, {result.updated} updated, {result.failed} failed"
    )
    await update_job_stats(session_factory, job_id, {
        "media_type": media_type, "selected": result.selected, "updated": result.updated, "failed": result.failed,
    })
    return result
