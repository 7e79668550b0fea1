"""
upserts.py

Idempotent writers for a media item and its sub-records. Per-item helpers look a row up by
its natural/composite key, update it when found and insert it otherwise. Rows shared by
every entity (media items, the provider registry, related links) are written with
INSERT .. ON CONFLICT so concurrent entity transactions never collide on a unique key.

persist_entity() writes one enriched entity inside a single transaction, in this order:
media item -> ratings -> rating buckets -> provider registry -> watch providers ->
content ratings -> cast -> videos -> watchers snapshot -> related bootstrap + links.
Any failure rolls the whole entity back.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from trendsync.models import (
    MediaCast,
    MediaContentRating,
    MediaItem,
    MediaRating,
    MediaRatingBucket,
    MediaRelated,
    MediaVideo,
    MediaWatchProvider,
    WatchersSnapshot,
    WatchProviderRegistry,
)
from trendsync.schemas import TMDBCastMember, TMDBVideo, WatchProvider
from trendsync.utils.timezone import utc_now

logger = logging.getLogger(__name__)

# Optional-enrichment columns: a missing value on this run keeps what is stored
KEEP_ON_NONE = frozenset({
    "trakt_id", "trakt_slug", "imdb_id", "tvdb_id",
    "title_localized", "overview_localized", "poster_localized",
    "rating_trakt", "rating_trakt_votes", "rating_imdb", "imdb_votes",
    "rating_metacritic", "rating_rotten_tomatoes", "content_rating",
})


@dataclass
class RelatedLinks:
    provenance: str
    ranked: List[Tuple[int, int]] = field(default_factory=list)  # (tmdb_id, rank)


@dataclass
class EntityBundle:
    """Everything one pipeline run writes for a single media item."""
    media_type: str
    tmdb_id: int
    fields: Dict[str, Any]
    ratings: Dict[str, Tuple[Optional[float], Optional[int]]] = field(default_factory=dict)
    rating_distributions: Dict[str, Dict[str, int]] = field(default_factory=dict)
    providers: List[WatchProvider] = field(default_factory=list)
    content_ratings: Dict[str, Optional[str]] = field(default_factory=dict)
    cast: List[TMDBCastMember] = field(default_factory=list)
    videos: List[TMDBVideo] = field(default_factory=list)
    watchers: Optional[int] = None
    related: Optional[RelatedLinks] = None
    bootstrap: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PersistResult:
    media_item_id: int = 0
    created: bool = False
    ratings: int = 0
    buckets: int = 0
    registry: int = 0
    providers: int = 0
    content_ratings: int = 0
    cast: int = 0
    videos: int = 0
    snapshot_inserted: bool = False
    related_bootstrapped: int = 0
    related_links_added: int = 0


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


def insert_for(session: AsyncSession, model):
    """Dialect insert supporting on_conflict_do_*: PostgreSQL in production, SQLite in tests."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def _find_media_item(session: AsyncSession, media_type: str, tmdb_id: int) -> Optional[MediaItem]:
    return (await session.execute(
        select(MediaItem).where(MediaItem.tmdb_id == tmdb_id, MediaItem.media_type == media_type)
    )).scalar_one_or_none()


async def upsert_media_item(session: AsyncSession, media_type: str, tmdb_id: int, fields: Dict[str, Any]) -> Tuple[MediaItem, bool]:
    item = await _find_media_item(session, media_type, tmdb_id)
    if item is None:
        # Another entity's transaction may bootstrap this item at the same moment
        stmt = insert_for(session, MediaItem).values(tmdb_id=tmdb_id, media_type=media_type, **fields)
        stmt = stmt.on_conflict_do_nothing(index_elements=["tmdb_id", "media_type"])
        inserted = (await session.execute(stmt)).rowcount == 1
        item = await _find_media_item(session, media_type, tmdb_id)
        if inserted:
            return item, True
    for key, value in fields.items():
        if value is None and key in KEEP_ON_NONE:
            continue
        setattr(item, key, value)
    item.updated_at = utc_now()
    await session.flush()
    return item, False


async def upsert_rating(session: AsyncSession, media_item_id: int, source: str, avg: Optional[float], votes: Optional[int]) -> bool:
    if avg is None and votes is None:
        return False
    row = (await session.execute(
        select(MediaRating).where(MediaRating.media_item_id == media_item_id, MediaRating.source == source)
    )).scalar_one_or_none()
    if row is None:
        session.add(MediaRating(media_item_id=media_item_id, source=source, avg=avg, votes=votes))
    else:
        if avg is not None:
            row.avg = avg
        if votes is not None:
            row.votes = votes
        row.updated_at = utc_now()
    return True


def normalize_distribution(distribution: Dict[Any, Any]) -> Dict[int, int]:
    """Keep buckets 1..10 with non-negative integer counts; anything else is discarded."""
    out: Dict[int, int] = {}
    for key, value in (distribution or {}).items():
        try:
            bucket = int(key)
            count = int(value)
        except (TypeError, ValueError):
            continue
        if 1 <= bucket <= 10 and count >= 0:
            out[bucket] = count
    return out


async def upsert_rating_buckets(session: AsyncSession, media_item_id: int, source: str, distribution: Dict[Any, Any]) -> int:
    buckets = normalize_distribution(distribution)
    if not buckets:
        return 0
    existing = {
        row.bucket: row
        for row in (await session.execute(
            select(MediaRatingBucket).where(
                MediaRatingBucket.media_item_id == media_item_id,
                MediaRatingBucket.source == source,
            )
        )).scalars()
    }
    for bucket, count in buckets.items():
        row = existing.get(bucket)
        if row is None:
            session.add(MediaRatingBucket(media_item_id=media_item_id, source=source, bucket=bucket, count=count))
        else:
            row.count = count
            row.updated_at = utc_now()
    return len(buckets)


async def upsert_provider_registry(session: AsyncSession, providers: Iterable[WatchProvider]) -> int:
    """Canonical provider rows keyed by provider id, independent of any media item."""
    unique: Dict[int, WatchProvider] = {}
    for p in providers:
        unique.setdefault(p.provider_id, p)
    table = WatchProviderRegistry.__table__
    # Sorted ids give every transaction the same row lock order
    for provider_id in sorted(unique):
        p = unique[provider_id]
        name = p.provider_name or f"provider-{provider_id}"
        stmt = insert_for(session, WatchProviderRegistry).values(
            provider_id=provider_id,
            name=name,
            slug=slugify(name) or str(provider_id),
            logo_path=p.logo_path,
            display_priority=p.rank,
            updated_at=utc_now(),
        )
        updates = {
            "logo_path": func.coalesce(stmt.excluded.logo_path, table.c.logo_path),
            "display_priority": func.coalesce(stmt.excluded.display_priority, table.c.display_priority),
            "updated_at": stmt.excluded.updated_at,
        }
        if p.provider_name:
            updates["name"] = stmt.excluded.name
            updates["slug"] = stmt.excluded.slug
        await session.execute(stmt.on_conflict_do_update(index_elements=["provider_id"], set_=updates))
    return len(unique)


async def upsert_watch_providers(session: AsyncSession, media_item_id: int, providers: Sequence[WatchProvider]) -> int:
    count = 0
    for p in providers:
        row = (await session.execute(
            select(MediaWatchProvider).where(
                MediaWatchProvider.media_item_id == media_item_id,
                MediaWatchProvider.region == p.region,
                MediaWatchProvider.provider_id == p.provider_id,
                MediaWatchProvider.category == p.category,
            )
        )).scalar_one_or_none()
        if row is None:
            session.add(MediaWatchProvider(
                media_item_id=media_item_id,
                region=p.region,
                provider_id=p.provider_id,
                provider_name=p.provider_name,
                logo_path=p.logo_path,
                link_url=p.link,
                category=p.category,
                rank=p.rank,
            ))
        else:
            row.provider_name = p.provider_name or row.provider_name
            row.logo_path = p.logo_path or row.logo_path
            row.link_url = p.link or row.link_url
            row.rank = p.rank
            row.updated_at = utc_now()
        await session.flush()
        count += 1
    return count


async def upsert_content_ratings(session: AsyncSession, media_item_id: int, ratings: Dict[str, Optional[str]]) -> int:
    count = 0
    for region, rating in ratings.items():
        if not rating:
            continue
        row = (await session.execute(
            select(MediaContentRating).where(
                MediaContentRating.media_item_id == media_item_id,
                MediaContentRating.region == region,
            )
        )).scalar_one_or_none()
        if row is None:
            session.add(MediaContentRating(media_item_id=media_item_id, region=region, rating=rating))
        else:
            row.rating = rating
            row.updated_at = utc_now()
        count += 1
    return count


async def upsert_cast(session: AsyncSession, media_item_id: int, cast: Sequence[TMDBCastMember]) -> int:
    count = 0
    for member in cast:
        character = member.character or ""
        row = (await session.execute(
            select(MediaCast).where(
                MediaCast.media_item_id == media_item_id,
                MediaCast.person_id == member.id,
                MediaCast.character == character,
            )
        )).scalar_one_or_none()
        if row is None:
            session.add(MediaCast(
                media_item_id=media_item_id,
                person_id=member.id,
                name=member.name,
                character=character,
                profile_path=member.profile_path,
                order=member.order,
            ))
        else:
            row.name = member.name
            row.profile_path = member.profile_path or row.profile_path
            row.order = member.order
            row.updated_at = utc_now()
        await session.flush()
        count += 1
    return count


async def upsert_videos(session: AsyncSession, media_item_id: int, videos: Sequence[TMDBVideo]) -> int:
    count = 0
    for video in videos:
        row = (await session.execute(
            select(MediaVideo).where(
                MediaVideo.media_item_id == media_item_id,
                MediaVideo.site == video.site,
                MediaVideo.key == video.key,
            )
        )).scalar_one_or_none()
        if row is None:
            session.add(MediaVideo(
                media_item_id=media_item_id,
                site=video.site,
                key=video.key,
                name=video.name,
                type=video.type,
                locale=video.iso_639_1,
                official=video.official,
                published_at=video.published_at,
            ))
        else:
            row.name = video.name
            row.type = video.type
            row.locale = video.iso_639_1
            row.official = video.official
            row.published_at = video.published_at
            row.updated_at = utc_now()
        await session.flush()
        count += 1
    return count


async def latest_snapshot_values(session: AsyncSession, media_item_id: int, limit: int = 6) -> List[int]:
    """Most recent watcher samples, newest first."""
    rows = await session.execute(
        select(WatchersSnapshot.watchers)
        .where(WatchersSnapshot.media_item_id == media_item_id)
        .order_by(WatchersSnapshot.created_at.desc(), WatchersSnapshot.id.desc())
        .limit(limit)
    )
    return [int(v) for v in rows.scalars()]


async def append_watchers_snapshot(session: AsyncSession, media_item_id: int, watchers: Optional[int]) -> bool:
    """Insert a sample only if it differs from the latest stored one; returns True when inserted."""
    if watchers is None:
        return False
    latest = await latest_snapshot_values(session, media_item_id, limit=1)
    if latest and latest[0] == int(watchers):
        return False
    session.add(WatchersSnapshot(media_item_id=media_item_id, watchers=int(watchers)))
    await session.flush()
    return True


async def existing_tmdb_ids(session: AsyncSession, media_type: str, tmdb_ids: Iterable[int]) -> Dict[int, int]:
    """{tmdb_id: media_item_id} for ids already in the catalog."""
    ids = list(set(tmdb_ids))
    if not ids:
        return {}
    rows = await session.execute(
        select(MediaItem.tmdb_id, MediaItem.id).where(MediaItem.media_type == media_type, MediaItem.tmdb_id.in_(ids))
    )
    return {tmdb_id: item_id for tmdb_id, item_id in rows.all()}


async def ensure_related_items(session: AsyncSession, media_type: str, records: Sequence[Dict[str, Any]], limit: int = 12) -> int:
    """Insert minimal catalog rows for related items that are still missing."""
    pending = [r for r in records if r.get("tmdb_id") is not None][:limit]
    present = await existing_tmdb_ids(session, media_type, [r["tmdb_id"] for r in pending])
    inserted = 0
    for record in sorted(pending, key=lambda r: r["tmdb_id"]):
        if record["tmdb_id"] in present:
            continue
        values = {k: v for k, v in record.items() if k not in ("tmdb_id", "media_type")}
        values.setdefault("is_bootstrap", True)
        # A sibling task may be inserting the same item; its row wins
        stmt = insert_for(session, MediaItem).values(tmdb_id=record["tmdb_id"], media_type=media_type, **values)
        res = await session.execute(stmt.on_conflict_do_nothing(index_elements=["tmdb_id", "media_type"]))
        present[record["tmdb_id"]] = -1
        inserted += res.rowcount
    return inserted


async def _linked_ids(session: AsyncSession, media_item_id: int) -> set:
    return set((await session.execute(
        select(MediaRelated.related_media_item_id).where(MediaRelated.media_item_id == media_item_id)
    )).scalars())


async def link_related(session: AsyncSession, media_item_id: int, media_type: str, links: RelatedLinks) -> int:
    """Insert-only related links; pairs that already exist and unknown targets are skipped."""
    if not links.ranked:
        return 0
    targets = await existing_tmdb_ids(session, media_type, [tmdb_id for tmdb_id, _ in links.ranked])
    existing = await _linked_ids(session, media_item_id)
    added = 0
    for tmdb_id, rank in links.ranked:
        related_id = targets.get(tmdb_id)
        if related_id is None or related_id == media_item_id or related_id in existing:
            continue
        stmt = insert_for(session, MediaRelated).values(
            media_item_id=media_item_id,
            related_media_item_id=related_id,
            provenance=links.provenance,
            rank=rank,
        )
        res = await session.execute(stmt.on_conflict_do_nothing(index_elements=["media_item_id", "related_media_item_id"]))
        existing.add(related_id)
        added += res.rowcount
    return added


async def persist_entity(session_factory, bundle: EntityBundle) -> PersistResult:
    result = PersistResult()
    async with session_factory() as session:
        async with session.begin():
            item, created = await upsert_media_item(session, bundle.media_type, bundle.tmdb_id, bundle.fields)
            result.media_item_id = item.id
            result.created = created

            for source, (avg, votes) in bundle.ratings.items():
                if await upsert_rating(session, item.id, source, avg, votes):
                    result.ratings += 1
            for source, distribution in bundle.rating_distributions.items():
                result.buckets += await upsert_rating_buckets(session, item.id, source, distribution)

            result.registry = await upsert_provider_registry(session, bundle.providers)
            result.providers = await upsert_watch_providers(session, item.id, bundle.providers)
            result.content_ratings = await upsert_content_ratings(session, item.id, bundle.content_ratings)
            result.cast = await upsert_cast(session, item.id, bundle.cast)
            result.videos = await upsert_videos(session, item.id, bundle.videos)
            result.snapshot_inserted = await append_watchers_snapshot(session, item.id, bundle.watchers)

            if bundle.related is not None:
                result.related_bootstrapped = await ensure_related_items(session, bundle.media_type, bundle.bootstrap)
                result.related_links_added = await link_related(session, item.id, bundle.media_type, bundle.related)
    return result


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)
