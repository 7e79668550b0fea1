class TraktAPIError(Exception):
    """Base exception for Trakt API errors."""
    pass

class TraktAuthError(TraktAPIError):
    """Raised when the Trakt client id is missing or rejected."""
    pass

class TraktNetworkError(TraktAPIError):
    """Raised when network or connection to Trakt fails."""
    pass

class TraktUnavailableError(TraktAPIError):
    """Raised when Trakt API is offline, unavailable or rate limiting us."""
    pass

"""
trakt_client.py

Async Trakt API client for public (client-id only) endpoints: trending, monthly watched,
ratings, related and the airing calendar. Responses are validated into schemas.
Retries are applied by callers (see services.retry); this client never retries itself.
"""

import logging
import httpx
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError

from trendsync.core.config import settings
from trendsync.schemas import (
    TraktCalendarEntry,
    TraktMedia,
    TraktRatings,
    TraktTrendingItem,
    TraktWatchedItem,
)

TRAKT_API_URL = "https://api.trakt.tv"
logger = logging.getLogger(__name__)

_trending_list = TypeAdapter(List[TraktTrendingItem])
_watched_list = TypeAdapter(List[TraktWatchedItem])
_media_list = TypeAdapter(List[TraktMedia])
_calendar_list = TypeAdapter(List[TraktCalendarEntry])


def _collection(media_type: str) -> str:
    return "movies" if media_type == "movie" else "shows"


class TraktClient:
    def __init__(self, client_id: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._client_id = client_id if client_id is not None else settings.trakt_client_id
        self._http = http_client
        self.timeout = timeout or settings.http_timeout_seconds

    def _get_headers(self) -> dict:
        if not self._client_id:
            logger.error("Trakt client_id is missing (set TRAKT_CLIENT_ID)")
            raise TraktAuthError("Trakt integration is not configured.")
        return {
            "Content-Type": "application/json",
            "trakt-api-version": "2",
            "trakt-api-key": self._client_id,
        }

    @asynccontextmanager
    async def _client(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _request(self, method: str, endpoint: str, params: Optional[dict] = None) -> Any:
        url = f"{TRAKT_API_URL}{endpoint}"
        headers = self._get_headers()
        try:
            async with self._client() as client:
                resp = await client.request(method, url, headers=headers, params=params)
                resp.raise_for_status()
                if resp.status_code == 204 or not resp.content:
                    return None
                return resp.json()
        except httpx.TimeoutException:
            logger.warning(f"Timeout calling Trakt {endpoint}")
            raise TraktNetworkError(f"Timeout calling Trakt {endpoint}")
        except httpx.ConnectError:
            logger.warning("Network error connecting to Trakt API.")
            raise TraktNetworkError("Network error connecting to Trakt API.")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise TraktAuthError(f"Trakt rejected the client id (status {status})")
            if status in (502, 503, 504):
                raise TraktUnavailableError(f"Trakt API is currently unavailable (status {status}).")
            if status == 429:
                raise TraktUnavailableError("Trakt API rate limit exceeded.")
            raise TraktAPIError(f"Trakt API error {status} for {endpoint}")
        except httpx.RequestError as e:
            logger.warning(f"Network error connecting to Trakt API: {e}")
            raise TraktNetworkError(f"Network error connecting to Trakt API: {e}")
        except ValueError as e:
            raise TraktAPIError(f"Invalid JSON from Trakt {endpoint}: {e}")

    def _validate(self, adapter: TypeAdapter, data: Any, endpoint: str):
        try:
            return adapter.validate_python(data if data is not None else [])
        except ValidationError as e:
            raise TraktAPIError(f"Unexpected Trakt payload for {endpoint}: {e.error_count()} errors")

    async def get_trending(self, media_type: str = "show", limit: int = 100) -> List[TraktTrendingItem]:
        endpoint = f"/{_collection(media_type)}/trending"
        params = {"limit": max(1, min(100, limit))}
        data = await self._request("GET", endpoint, params=params)
        return self._validate(_trending_list, data, endpoint)

    async def get_watched(self, media_type: str, period: str = "monthly", start_date: Optional[str] = None, limit: int = 200) -> List[TraktWatchedItem]:
        """Most watched for a period; `start_date` (YYYY-MM-DD) anchors the window."""
        endpoint = f"/{_collection(media_type)}/watched/{period}"
        if start_date:
            endpoint = f"{endpoint}/{start_date}"
        data = await self._request("GET", endpoint, params={"limit": limit})
        return self._validate(_watched_list, data, endpoint)

    async def get_ratings(self, media_type: str, trakt_id: str) -> TraktRatings:
        endpoint = f"/{_collection(media_type)}/{trakt_id}/ratings"
        data = await self._request("GET", endpoint)
        try:
            return TraktRatings.model_validate(data or {})
        except ValidationError as e:
            raise TraktAPIError(f"Unexpected Trakt payload for {endpoint}: {e.error_count()} errors")

    async def get_related(self, media_type: str, trakt_id: str, limit: int = 12) -> List[TraktMedia]:
        endpoint = f"/{_collection(media_type)}/{trakt_id}/related"
        data = await self._request("GET", endpoint, params={"limit": limit})
        return self._validate(_media_list, data, endpoint)

    async def get_calendar_shows(self, start_date: str, days: int) -> List[TraktCalendarEntry]:
        """All shows' episodes airing in [start_date, start_date + days)."""
        endpoint = f"/calendars/all/shows/{start_date}/{days}"
        data = await self._request("GET", endpoint, params={"extended": "full"})
        return self._validate(_calendar_list, data, endpoint)
