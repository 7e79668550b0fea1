"""Entity enrichment pipeline.

Responsible for turning one queued trending candidate into a fully enriched catalog record:
 1. Reject early (no TMDB id, denylisted title) before spending API calls.
 2. Fetch TMDB details + localized translation (details are required).
 3. Reject by genre / localized title.
 4. Fan out: videos + cast | providers + content ratings for both regions |
    OMDb critic ratings + Trakt community ratings. Every fetch in step 4 is optional.
 5. Compute trending score and watcher deltas, resolve related items.
 6. Persist everything in one transaction (services.upserts.persist_entity).

Design notes:
 - All upstream calls go through the batch's shared caches with retry.
 - Optional failures degrade to None/[]; required failures propagate to the task processor.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select

from trendsync.core.config import settings
from trendsync.models import MediaItem
from trendsync.schemas import (
    OMDbRatings,
    TMDBCastMember,
    TMDBDetails,
    TMDBTranslation,
    TMDBVideo,
    TraktRatings,
    TrendingMoviePayload,
    TrendingShowPayload,
    WatchProvider,
)
from trendsync.services.cache import EnrichmentCaches, cached_with_retry
from trendsync.services.catalog import CatalogClients
from trendsync.services.related import build_bootstrap_records, resolve_related
from trendsync.services.scoring import (
    empty_monthly_maps,
    monthly_delta,
    primary_rating,
    snapshot_delta,
    trending_score,
    watchers_delta,
)
from trendsync.services.upserts import EntityBundle, PersistResult, dumps, latest_snapshot_values, persist_entity
from trendsync.utils.timezone import utc_now

logger = logging.getLogger(__name__)

ANIME_KEYWORDS = ("anime", "аніме")
ANIME_GENRE_ID = 16
PREFERRED_VIDEO_TYPES = ("Trailer", "Teaser", "Clip", "Featurette", "Promo")
CAST_LIMIT = 12

Payload = Union[TrendingShowPayload, TrendingMoviePayload]


class EntitySkipped(Exception):
    """Entity deliberately not processed (no external id or excluded by a filter)."""
    pass


@dataclass
class BatchContext:
    """State shared by every entity of one processor batch."""
    caches: EnrichmentCaches
    session_factory: Any
    monthly_maps: Dict[str, List[Dict[int, int]]] = field(default_factory=dict)
    max_watchers: int = 0

    def monthly_for(self, media_type: str) -> List[Dict[int, int]]:
        return self.monthly_maps.get(media_type) or empty_monthly_maps()


@dataclass
class EntityOutcome:
    tmdb_id: int
    media_type: str
    title: str
    trending_score: int
    related_provenance: Optional[str]
    persist: PersistResult


def is_excluded_title(*titles: Optional[str]) -> bool:
    for title in titles:
        lowered = (title or "").lower()
        if any(keyword in lowered for keyword in ANIME_KEYWORDS):
            return True
    return False


def is_excluded_entity(media_type: str, details: TMDBDetails, translation: Optional[TMDBTranslation]) -> bool:
    if media_type == "show" and ANIME_GENRE_ID in details.genre_ids:
        return True
    localized = translation.title if translation is not None else None
    return is_excluded_title(details.display_title, localized)


def select_videos(videos: Sequence[TMDBVideo]) -> List[TMDBVideo]:
    """YouTube videos of preferred types, ordered by type preference then official first."""
    picked: Dict[str, TMDBVideo] = {}
    for v in videos:
        if v.site != "YouTube" or v.type not in PREFERRED_VIDEO_TYPES:
            continue
        picked.setdefault(v.key, v)
    return sorted(
        picked.values(),
        key=lambda v: (PREFERRED_VIDEO_TYPES.index(v.type), 0 if v.official else 1),
    )


def top_cast(cast: Sequence[TMDBCastMember], limit: int = CAST_LIMIT) -> List[TMDBCastMember]:
    ordered = sorted(cast, key=lambda c: (c.order is None, c.order if c.order is not None else 0))
    return ordered[:limit]


def merge_providers(*groups: Sequence[WatchProvider]) -> List[WatchProvider]:
    """Concatenate region lists keeping the first offer per (region, provider_id)."""
    seen = set()
    merged = []
    for group in groups:
        for p in group or []:
            key = (p.region, p.provider_id)
            if key in seen:
                continue
            seen.add(key)
            merged.append(p)
    return merged


async def _optional(label: str, coro, default=None):
    try:
        return await coro
    except Exception as e:
        logger.debug(f"Optional fetch {label} failed: {e}")
        return default


async def _load_previous(session_factory, media_type: str, tmdb_id: int) -> Tuple[Optional[int], Optional[int], List[int]]:
    """(media_item_id, stored watchers, latest snapshot values) for an existing item."""
    async with session_factory() as session:
        row = (await session.execute(
            select(MediaItem.id, MediaItem.watchers).where(
                MediaItem.tmdb_id == tmdb_id, MediaItem.media_type == media_type
            )
        )).first()
        if row is None:
            return None, None, []
        snapshots = await latest_snapshot_values(session, row[0], limit=6)
        return row[0], row[1], snapshots


@dataclass
class _Enrichment:
    videos: List[TMDBVideo] = field(default_factory=list)
    cast: List[TMDBCastMember] = field(default_factory=list)
    providers: Dict[str, List[WatchProvider]] = field(default_factory=dict)
    content_ratings: Dict[str, Optional[str]] = field(default_factory=dict)
    omdb: Optional[OMDbRatings] = None
    trakt_ratings: Optional[TraktRatings] = None
    imdb_id: Optional[str] = None
    tvdb_id: Optional[int] = None


async def _fetch_media_group(clients: CatalogClients, caches: EnrichmentCaches, media_type: str, tmdb_id: int, out: _Enrichment):
    key = (media_type, tmdb_id)
    videos, cast = await asyncio.gather(
        _optional("videos", cached_with_retry(caches.videos, key, clients.tmdb.get_videos, media_type, tmdb_id), []),
        _optional("credits", cached_with_retry(caches.credits, key, clients.tmdb.get_credits, media_type, tmdb_id), []),
    )
    out.videos = select_videos(videos or [])
    out.cast = top_cast(cast or [])


async def _fetch_region_group(clients: CatalogClients, caches: EnrichmentCaches, media_type: str, tmdb_id: int, out: _Enrichment):
    regions = settings.regions
    providers = await asyncio.gather(*(
        _optional(
            f"providers.{region}",
            cached_with_retry(caches.providers, (media_type, tmdb_id, region), clients.tmdb.get_watch_providers, media_type, tmdb_id, region),
            [],
        )
        for region in regions
    ))
    ratings = await asyncio.gather(*(
        _optional(
            f"content_rating.{region}",
            cached_with_retry(caches.content_ratings, (media_type, tmdb_id, region), clients.tmdb.get_content_rating, media_type, tmdb_id, region),
            None,
        )
        for region in regions
    ))
    out.providers = {region: list(p or []) for region, p in zip(regions, providers)}
    out.content_ratings = dict(zip(regions, ratings))


async def _fetch_ratings_group(
    clients: CatalogClients,
    caches: EnrichmentCaches,
    media_type: str,
    tmdb_id: int,
    details: TMDBDetails,
    payload: Payload,
    out: _Enrichment,
):
    out.imdb_id = details.imdb_id or payload.media.ids.imdb
    out.tvdb_id = payload.media.ids.tvdb
    if not out.imdb_id or out.tvdb_id is None:
        external = await _optional(
            "external_ids",
            cached_with_retry(caches.external_ids, (media_type, tmdb_id), clients.tmdb.get_external_ids, media_type, tmdb_id),
        )
        if external is not None:
            out.imdb_id = out.imdb_id or external.imdb_id
            out.tvdb_id = out.tvdb_id if out.tvdb_id is not None else external.tvdb_id

    lookups = []
    if out.imdb_id and clients.omdb.enabled:
        lookups.append(_optional("omdb", cached_with_retry(caches.ratings, ("omdb", out.imdb_id), clients.omdb.get_ratings, out.imdb_id)))
    else:
        lookups.append(asyncio.sleep(0, result=None))
    trakt_id = payload.media.lookup_id
    if trakt_id:
        lookups.append(_optional(
            "trakt_ratings",
            cached_with_retry(caches.ratings, ("trakt", media_type, trakt_id), clients.trakt.get_ratings, media_type, trakt_id),
        ))
    else:
        lookups.append(asyncio.sleep(0, result=None))
    out.omdb, out.trakt_ratings = await asyncio.gather(*lookups)


async def _guarded(label: str, coro) -> None:
    # A whole fetch group failing still lets the entity persist with partial data
    try:
        await coro
    except Exception as e:
        logger.warning(f"Enrichment group {label} failed: {e}")


def build_media_fields(
    media_type: str,
    details: TMDBDetails,
    translation: Optional[TMDBTranslation],
    payload: Payload,
    extra: _Enrichment,
) -> Dict[str, Any]:
    omdb = extra.omdb
    trakt = extra.trakt_ratings
    fields: Dict[str, Any] = {
        "trakt_id": payload.media.ids.trakt,
        "trakt_slug": payload.media.ids.slug,
        "imdb_id": extra.imdb_id,
        "tvdb_id": extra.tvdb_id,
        "title": details.display_title or payload.media.title or str(details.id),
        "original_title": details.original_name or details.original_title,
        "title_localized": translation.title if translation else None,
        "overview": details.overview,
        "overview_localized": translation.overview if translation else None,
        "tagline": details.tagline,
        "poster_path": details.poster_path,
        "poster_localized": translation.poster_path if translation else None,
        "backdrop_path": details.backdrop_path,
        "original_language": details.original_language,
        "genres": dumps([g.model_dump() for g in details.genres]),
        "videos": dumps([{"site": v.site, "key": v.key, "name": v.name, "type": v.type} for v in extra.videos]),
        "status": details.status,
        "content_rating": extra.content_ratings.get(settings.primary_region),
        "rating_tmdb": details.vote_average,
        "rating_tmdb_count": details.vote_count,
        "popularity_tmdb": details.popularity,
        "rating_trakt": trakt.rating if trakt else None,
        "rating_trakt_votes": trakt.votes if trakt else None,
        "rating_imdb": omdb.imdb_rating if omdb else None,
        "imdb_votes": omdb.imdb_votes if omdb else None,
        "rating_metacritic": omdb.metacritic if omdb else None,
        "rating_rotten_tomatoes": omdb.rotten_tomatoes if omdb else None,
        "is_bootstrap": False,
    }
    fields["primary_rating"] = primary_rating(
        details.vote_average, fields["rating_trakt"], fields["rating_imdb"]
    )
    if media_type == "movie":
        fields["release_date"] = details.release_date
        fields["runtime"] = details.runtime
    else:
        latest = details.latest_season
        last_ep = details.last_episode_to_air
        next_ep = details.next_episode_to_air
        fields.update({
            "networks": dumps([n.name for n in details.networks if n.name]),
            "first_air_date": details.first_air_date,
            "runtime": details.episode_run_time[0] if details.episode_run_time else None,
            "number_of_seasons": details.number_of_seasons,
            "number_of_episodes": details.number_of_episodes,
            "latest_season_number": latest.season_number if latest else None,
            "latest_season_episodes": latest.episode_count if latest else None,
            "last_episode_season": last_ep.season_number if last_ep else None,
            "last_episode_number": last_ep.episode_number if last_ep else None,
            "last_episode_air_date": last_ep.air_date if last_ep else None,
            "next_episode_season": next_ep.season_number if next_ep else None,
            "next_episode_number": next_ep.episode_number if next_ep else None,
            "next_episode_air_date": next_ep.air_date if next_ep else None,
        })
    return fields


async def process_entity(clients: CatalogClients, ctx: BatchContext, payload: Payload) -> EntityOutcome:
    """Run the full enrichment pipeline for one queued candidate.

    Raises EntitySkipped for rejected candidates; any other exception means the entity failed
    and nothing was written for it.
    """
    media_type = payload.media_type
    tmdb_id = payload.media.ids.tmdb
    if tmdb_id is None:
        raise EntitySkipped("candidate has no TMDB id")
    if is_excluded_title(payload.media.title):
        raise EntitySkipped(f"title '{payload.media.title}' is excluded")

    caches = ctx.caches
    key = (media_type, tmdb_id)
    details, translation = await asyncio.gather(
        cached_with_retry(caches.details, key, clients.tmdb.get_details, media_type, tmdb_id),
        _optional("translation", cached_with_retry(caches.translations, key, clients.tmdb.get_translation, media_type, tmdb_id)),
    )
    if is_excluded_entity(media_type, details, translation):
        raise EntitySkipped(f"{media_type}/{tmdb_id} excluded by genre or localized title")

    extra = _Enrichment()
    await asyncio.gather(
        _guarded("media", _fetch_media_group(clients, caches, media_type, tmdb_id, extra)),
        _guarded("regions", _fetch_region_group(clients, caches, media_type, tmdb_id, extra)),
        _guarded("ratings", _fetch_ratings_group(clients, caches, media_type, tmdb_id, details, payload, extra)),
    )
    providers = merge_providers(*(extra.providers.get(region, []) for region in settings.regions))

    fields = build_media_fields(media_type, details, translation, payload, extra)

    watchers = payload.watchers
    _, previous_watchers, snapshots = await _load_previous(ctx.session_factory, media_type, tmdb_id)
    score = trending_score(details.vote_average, watchers, ctx.max_watchers)
    delta_3m = monthly_delta(ctx.monthly_for(media_type), tmdb_id)
    if delta_3m == 0:
        delta_3m = snapshot_delta(snapshots)
    fields.update({
        "watchers": watchers,
        "trending_score": score,
        "watchers_delta": watchers_delta(watchers, previous_watchers),
        "delta_3m": delta_3m,
        "trending_updated_at": utc_now(),
    })

    related = await resolve_related(
        clients, caches, media_type, tmdb_id,
        trakt_lookup_id=payload.media.lookup_id,
        base_genre_ids=details.genre_ids,
    )
    bootstrap = await build_bootstrap_records(clients, caches, ctx.session_factory, media_type, related.ids)

    bundle = EntityBundle(
        media_type=media_type,
        tmdb_id=tmdb_id,
        fields=fields,
        ratings={
            "tmdb": (details.vote_average, details.vote_count),
            "trakt": (fields["rating_trakt"], fields["rating_trakt_votes"]),
            "imdb": (fields["rating_imdb"], fields["imdb_votes"]),
            "metacritic": (fields["rating_metacritic"], None),
        },
        rating_distributions={"trakt": extra.trakt_ratings.distribution} if extra.trakt_ratings else {},
        providers=providers,
        content_ratings=extra.content_ratings,
        cast=extra.cast,
        videos=extra.videos,
        watchers=watchers,
        related=related.links(),
        bootstrap=bootstrap,
    )
    persisted = await persist_entity(ctx.session_factory, bundle)
    logger.debug(
        f"Persisted {media_type}/{tmdb_id} ({'new' if persisted.created else 'updated'}): "
        f"score={score}, related={len(related.ids)} via {related.provenance}"
    )
    return EntityOutcome(
        tmdb_id=tmdb_id,
        media_type=media_type,
        title=fields["title"],
        trending_score=score,
        related_provenance=related.provenance if related.ids else None,
        persist=persisted,
    )
