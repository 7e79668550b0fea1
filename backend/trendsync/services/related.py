"""Related-entity resolution.

Design notes:
 - Primary source is Trakt's similarity-based /related; when it yields nothing we fall back
   to TMDB's popularity-based recommendations and record provenance "secondary".
 - Genre filter: a candidate carrying any denylisted genre is dropped; otherwise it is kept
   when either genre set is unknown/empty or the two sets intersect. A failed genre lookup
   counts as unknown, never as exclusion.
 - Rank is the candidate's 1-based position in the source list; at most 12 links are kept.
 - Candidates missing from the catalog get a minimal bootstrap record (max 12 per entity),
   fetched here and written by the upsert layer inside the entity transaction.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from trendsync.services.cache import EnrichmentCaches, cached_with_retry
from trendsync.services.catalog import CatalogClients
from trendsync.services.upserts import RelatedLinks, dumps, existing_tmdb_ids

logger = logging.getLogger(__name__)

PROVENANCE_PRIMARY = "primary"
PROVENANCE_SECONDARY = "secondary"
RELATED_LIMIT = 12
BOOTSTRAP_LIMIT = 12
# Animation, Documentary, Reality, Talk, News, Soap
RELATED_BANNED_GENRES = frozenset({16, 99, 10764, 10767, 10763, 10766})


@dataclass
class RelatedCandidate:
    tmdb_id: int
    rank: int
    genre_ids: Optional[List[int]] = None


@dataclass
class RelatedResult:
    provenance: str = PROVENANCE_PRIMARY
    candidates: List[RelatedCandidate] = field(default_factory=list)

    @property
    def ids(self) -> List[int]:
        return [c.tmdb_id for c in self.candidates]

    def links(self) -> RelatedLinks:
        return RelatedLinks(provenance=self.provenance, ranked=[(c.tmdb_id, c.rank) for c in self.candidates])


def passes_genre_filter(base: Iterable[int], candidate: Iterable[int], denylist: Iterable[int] = RELATED_BANNED_GENRES) -> bool:
    base_set: Set[int] = set(base or [])
    cand_set: Set[int] = set(candidate or [])
    if cand_set & set(denylist):
        return False
    return not cand_set or not base_set or bool(cand_set & base_set)


def _dedupe(candidates: List[RelatedCandidate], base_tmdb_id: int) -> List[RelatedCandidate]:
    seen = {base_tmdb_id}
    out = []
    for c in candidates:
        if c.tmdb_id in seen:
            continue
        seen.add(c.tmdb_id)
        out.append(c)
    return out


async def _primary_candidates(clients: CatalogClients, media_type: str, trakt_lookup_id: Optional[str]) -> List[RelatedCandidate]:
    if not trakt_lookup_id:
        return []
    try:
        related = await clients.trakt.get_related(media_type, trakt_lookup_id, limit=RELATED_LIMIT)
    except Exception as e:
        logger.debug(f"Trakt related failed for {media_type}/{trakt_lookup_id}: {e}")
        return []
    out = []
    for position, media in enumerate(related[:RELATED_LIMIT], start=1):
        if media.ids.tmdb is not None:
            out.append(RelatedCandidate(tmdb_id=media.ids.tmdb, rank=position))
    return out


async def _secondary_candidates(clients: CatalogClients, media_type: str, tmdb_id: int) -> List[RelatedCandidate]:
    try:
        recs = await clients.tmdb.get_recommendations(media_type, tmdb_id)
    except Exception as e:
        logger.debug(f"TMDB recommendations failed for {media_type}/{tmdb_id}: {e}")
        return []
    return [
        RelatedCandidate(tmdb_id=rec.id, rank=position, genre_ids=rec.genre_ids)
        for position, rec in enumerate(recs[:RELATED_LIMIT], start=1)
    ]


async def _genres(clients: CatalogClients, caches: EnrichmentCaches, media_type: str, tmdb_id: int) -> List[int]:
    try:
        return await cached_with_retry(
            caches.genres, (media_type, tmdb_id), clients.tmdb.get_genre_ids, media_type, tmdb_id
        ) or []
    except Exception as e:
        logger.debug(f"Genre lookup failed for {media_type}/{tmdb_id}: {e}")
        return []


async def resolve_related(
    clients: CatalogClients,
    caches: EnrichmentCaches,
    media_type: str,
    tmdb_id: int,
    trakt_lookup_id: Optional[str] = None,
    base_genre_ids: Optional[List[int]] = None,
) -> RelatedResult:
    """Ranked, genre-filtered related ids for one entity."""
    result = RelatedResult(provenance=PROVENANCE_PRIMARY)
    candidates = _dedupe(await _primary_candidates(clients, media_type, trakt_lookup_id), tmdb_id)
    if not candidates:
        candidates = _dedupe(await _secondary_candidates(clients, media_type, tmdb_id), tmdb_id)
        if candidates:
            result.provenance = PROVENANCE_SECONDARY
    if not candidates:
        return result

    if base_genre_ids is None:
        base_genre_ids = await _genres(clients, caches, media_type, tmdb_id)

    async def genres_for(c: RelatedCandidate) -> List[int]:
        if c.genre_ids is not None:
            return c.genre_ids
        return await _genres(clients, caches, media_type, c.tmdb_id)

    candidate_genres = await asyncio.gather(*(genres_for(c) for c in candidates))
    for c, genres in zip(candidates, candidate_genres):
        if passes_genre_filter(base_genre_ids, genres):
            c.genre_ids = list(genres)
            result.candidates.append(c)
        if len(result.candidates) >= RELATED_LIMIT:
            break
    return result


async def _bootstrap_record(clients: CatalogClients, caches: EnrichmentCaches, media_type: str, tmdb_id: int) -> Optional[Dict[str, Any]]:
    try:
        details = await cached_with_retry(caches.details, (media_type, tmdb_id), clients.tmdb.get_details, media_type, tmdb_id)
    except Exception as e:
        logger.debug(f"Bootstrap details failed for {media_type}/{tmdb_id}: {e}")
        return None
    try:
        translation = await cached_with_retry(
            caches.translations, (media_type, tmdb_id), clients.tmdb.get_translation, media_type, tmdb_id
        )
    except Exception:
        translation = None
    record = {
        "tmdb_id": tmdb_id,
        "title": details.display_title or str(tmdb_id),
        "original_title": details.original_name or details.original_title,
        "overview": details.overview,
        "poster_path": details.poster_path,
        "backdrop_path": details.backdrop_path,
        "original_language": details.original_language,
        "genres": dumps([g.model_dump() for g in details.genres]),
        "status": details.status,
        "rating_tmdb": details.vote_average,
        "rating_tmdb_count": details.vote_count,
        "popularity_tmdb": details.popularity,
        "primary_rating": details.vote_average or None,
        "is_bootstrap": True,
    }
    if media_type == "movie":
        record["release_date"] = details.release_date
        record["runtime"] = details.runtime
    else:
        record["first_air_date"] = details.first_air_date
        record["number_of_seasons"] = details.number_of_seasons
        record["number_of_episodes"] = details.number_of_episodes
    if translation is not None:
        record["title_localized"] = translation.title
        record["overview_localized"] = translation.overview
        record["poster_localized"] = translation.poster_path
    return record


async def build_bootstrap_records(
    clients: CatalogClients,
    caches: EnrichmentCaches,
    session_factory,
    media_type: str,
    tmdb_ids: List[int],
) -> List[Dict[str, Any]]:
    """Minimal records for related ids not yet in the catalog (best-effort, capped)."""
    if not tmdb_ids:
        return []
    async with session_factory() as session:
        present = await existing_tmdb_ids(session, media_type, tmdb_ids)
    missing = [t for t in tmdb_ids if t not in present][:BOOTSTRAP_LIMIT]
    records = await asyncio.gather(*(_bootstrap_record(clients, caches, media_type, t) for t in missing))
    return [r for r in records if r is not None]
