"""
scoring.py

Derived metrics for trending entities: trending score, watcher deltas and primary rating.
"""
from typing import Dict, Mapping, Optional, Sequence

MonthlyMaps = Sequence[Mapping[int, int]]  # m0 (current month) .. m5, tmdb_id -> watchers

RATING_WEIGHT = 5.0  # rating 0..10 -> 0..50
WATCHERS_WEIGHT = 50.0  # watcher share 0..1 -> 0..50
MIN_SNAPSHOTS_FOR_DELTA = 4


def trending_score(rating: Optional[float], watchers: Optional[int], max_watchers: Optional[int]) -> int:
    """Score in [0, 100]: half from the clamped 0..10 rating, half from watchers
    relative to the batch's peak watcher count."""
    rating_part = max(0.0, min(10.0, float(rating or 0.0))) * RATING_WEIGHT
    watchers_part = 0.0
    if max_watchers and max_watchers > 0 and watchers:
        watchers_part = min(1.0, max(0.0, watchers / max_watchers)) * WATCHERS_WEIGHT
    return int(round(rating_part + watchers_part))


def watchers_delta(current: Optional[int], previous: Optional[int]) -> int:
    if current is None or previous is None:
        return 0
    return int(current) - int(previous)


def monthly_delta(maps: MonthlyMaps, tmdb_id: int) -> int:
    """(m0 + m1 + m2) - (m3 + m4 + m5) for one entity; missing months count as 0."""
    values = [int((maps[i] if i < len(maps) else {}).get(tmdb_id, 0) or 0) for i in range(6)]
    return sum(values[:3]) - sum(values[3:])


def snapshot_delta(recent_first: Sequence[int]) -> int:
    """Fallback delta from stored snapshots (newest first): newest 3 minus the 3 before them.
    Needs at least 4 samples, otherwise 0."""
    if len(recent_first) < MIN_SNAPSHOTS_FOR_DELTA:
        return 0
    values = [int(v or 0) for v in recent_first[:6]]
    return sum(values[:3]) - sum(values[3:6])


def primary_rating(tmdb: Optional[float], trakt: Optional[float], imdb: Optional[float]) -> Optional[float]:
    """First available of TMDB (0 counts as missing), Trakt community, IMDb critic."""
    if tmdb:
        return float(tmdb)
    if trakt is not None:
        return float(trakt)
    if imdb is not None:
        return float(imdb)
    return None


def batch_max_watchers(watchers: Sequence[Optional[int]]) -> int:
    return max([int(w or 0) for w in watchers] or [0])


def empty_monthly_maps() -> list:
    return [dict() for _ in range(6)]


def to_watchers_map(items) -> Dict[int, int]:
    """TraktWatchedItem list -> {tmdb_id: watcher_count}."""
    out: Dict[int, int] = {}
    for item in items or []:
        tmdb_id = item.media.ids.tmdb
        if tmdb_id is not None:
            out[tmdb_id] = item.watcher_count
    return out
