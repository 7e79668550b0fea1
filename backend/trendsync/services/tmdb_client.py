"""
TMDB client for trendsync.
- Async httpx client with a per-call timeout.
- API key from settings (TMDB_API_KEY) or passed explicitly.
- Validates every payload into schemas; no in-module caching (results cached by caller).
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from trendsync.core.config import settings
from trendsync.schemas import (
    TMDBCastMember,
    TMDBDetails,
    TMDBExternalIds,
    TMDBRecommendation,
    TMDBTranslation,
    TMDBVideo,
    WatchProvider,
)

TMDB_BASE = "https://api.themoviedb.org/3"
PROVIDER_CATEGORIES = ("flatrate", "free", "ads", "rent", "buy")
logger = logging.getLogger(__name__)


class TMDBAPIError(Exception):
    """Raised for TMDB transport, status or payload errors."""
    pass


class TMDBNotFoundError(TMDBAPIError):
    pass


def tmdb_type(media_type: str) -> str:
    """Map our media_type ('show'/'movie') to TMDB's path segment."""
    return "movie" if media_type == "movie" else "tv"


class TMDBClient:
    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.tmdb_api_key
        self._http = http_client
        self.timeout = timeout or settings.http_timeout_seconds

    @asynccontextmanager
    async def _client(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key:
            logger.warning("TMDB API key not configured")
            raise TMDBAPIError("TMDB API key not configured")
        query = {"api_key": self.api_key}
        query.update(params or {})
        try:
            async with self._client() as client:
                resp = await client.get(f"{TMDB_BASE}{path}", params=query)
                if resp.status_code == 404:
                    raise TMDBNotFoundError(f"TMDB {path} not found")
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TMDBAPIError(f"TMDB error {e.response.status_code} for {path}")
        except httpx.RequestError as e:
            raise TMDBAPIError(f"TMDB request failed for {path}: {e}")
        except ValueError as e:
            raise TMDBAPIError(f"Invalid JSON from TMDB {path}: {e}")
        if not isinstance(data, dict):
            raise TMDBAPIError(f"Unexpected TMDB payload for {path}")
        return data

    @staticmethod
    def _parse(model, data: Any, path: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TMDBAPIError(f"Unexpected TMDB payload for {path}: {e.error_count()} errors")

    def _parse_list(self, model, rows: Any, path: str) -> List[BaseModel]:
        out = []
        for row in rows or []:
            try:
                out.append(model.model_validate(row))
            except ValidationError:
                # One malformed row should not drop the rest of the list
                logger.debug(f"Skipping malformed TMDB row from {path}")
        return out

    async def get_details(self, media_type: str, tmdb_id: int) -> TMDBDetails:
        path = f"/{tmdb_type(media_type)}/{tmdb_id}"
        return self._parse(TMDBDetails, await self._get(path), path)

    async def get_translation(self, media_type: str, tmdb_id: int, language: Optional[str] = None) -> TMDBTranslation:
        """Localized title/overview/poster via the details endpoint's language parameter."""
        path = f"/{tmdb_type(media_type)}/{tmdb_id}"
        data = await self._get(path, {"language": language or settings.translation_language})
        return self._parse(
            TMDBTranslation,
            {
                "title": data.get("name") or data.get("title"),
                "overview": data.get("overview"),
                "poster_path": data.get("poster_path"),
            },
            path,
        )

    async def get_videos(self, media_type: str, tmdb_id: int) -> List[TMDBVideo]:
        path = f"/{tmdb_type(media_type)}/{tmdb_id}/videos"
        data = await self._get(path)
        return self._parse_list(TMDBVideo, data.get("results"), path)

    async def get_credits(self, media_type: str, tmdb_id: int) -> List[TMDBCastMember]:
        """Cast list; shows use aggregate_credits so long-running casts are complete."""
        suffix = "credits" if media_type == "movie" else "aggregate_credits"
        path = f"/{tmdb_type(media_type)}/{tmdb_id}/{suffix}"
        data = await self._get(path)
        return self._parse_list(TMDBCastMember, data.get("cast"), path)

    async def get_external_ids(self, media_type: str, tmdb_id: int) -> TMDBExternalIds:
        path = f"/{tmdb_type(media_type)}/{tmdb_id}/external_ids"
        return self._parse(TMDBExternalIds, await self._get(path), path)

    async def get_watch_providers(self, media_type: str, tmdb_id: int, region: str) -> List[WatchProvider]:
        """Offers for one region, flattened across categories (rank = display_priority)."""
        path = f"/{tmdb_type(media_type)}/{tmdb_id}/watch/providers"
        data = await self._get(path)
        block = (data.get("results") or {}).get(region) or {}
        link = block.get("link")
        rows = []
        for category in PROVIDER_CATEGORIES:
            for entry in block.get(category) or []:
                if not isinstance(entry, dict):
                    continue
                rows.append({
                    "region": region,
                    "provider_id": entry.get("provider_id"),
                    "provider_name": entry.get("provider_name"),
                    "logo_path": entry.get("logo_path"),
                    "link": link,
                    "category": category,
                    "rank": entry.get("display_priority"),
                })
        return self._parse_list(WatchProvider, rows, path)

    async def get_content_rating(self, media_type: str, tmdb_id: int, region: str) -> Optional[str]:
        """Age certification for a region; None when TMDB has none."""
        if media_type == "movie":
            path = f"/movie/{tmdb_id}/release_dates"
            data = await self._get(path)
            for entry in data.get("results") or []:
                if entry.get("iso_3166_1") != region:
                    continue
                for release in entry.get("release_dates") or []:
                    cert = (release.get("certification") or "").strip()
                    if cert:
                        return cert
            return None
        path = f"/tv/{tmdb_id}/content_ratings"
        data = await self._get(path)
        for entry in data.get("results") or []:
            if entry.get("iso_3166_1") == region:
                rating = (entry.get("rating") or "").strip()
                return rating or None
        return None

    async def get_recommendations(self, media_type: str, tmdb_id: int, page: int = 1) -> List[TMDBRecommendation]:
        path = f"/{tmdb_type(media_type)}/{tmdb_id}/recommendations"
        data = await self._get(path, {"page": page})
        return self._parse_list(TMDBRecommendation, data.get("results"), path)

    async def get_genre_ids(self, media_type: str, tmdb_id: int) -> List[int]:
        details = await self.get_details(media_type, tmdb_id)
        return details.genre_ids
