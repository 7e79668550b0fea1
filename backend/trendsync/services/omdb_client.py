"""
OMDb client: critic aggregates (IMDb rating/votes, Metacritic, Rotten Tomatoes) by IMDb id.
Silently disabled when no OMDB_API_KEY is configured.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from pydantic import ValidationError

from trendsync.core.config import settings
from trendsync.schemas import OMDbRatings

OMDB_BASE = "https://www.omdbapi.com/"
logger = logging.getLogger(__name__)


class OMDbAPIError(Exception):
    pass


class OMDbClient:
    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.omdb_api_key
        self._http = http_client
        self.timeout = timeout or settings.http_timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @asynccontextmanager
    async def _client(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def get_ratings(self, imdb_id: str) -> Optional[OMDbRatings]:
        """Aggregated ratings for an IMDb id; None when disabled or OMDb has no record."""
        if not self.enabled or not imdb_id:
            return None
        try:
            async with self._client() as client:
                resp = await client.get(OMDB_BASE, params={"apikey": self.api_key, "i": imdb_id})
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise OMDbAPIError(f"OMDb error {e.response.status_code} for {imdb_id}")
        except httpx.RequestError as e:
            raise OMDbAPIError(f"OMDb request failed for {imdb_id}: {e}")
        except ValueError as e:
            raise OMDbAPIError(f"Invalid JSON from OMDb for {imdb_id}: {e}")
        if not isinstance(data, dict) or str(data.get("Response", "True")).lower() == "false":
            logger.debug(f"OMDb has no record for {imdb_id}: {data.get('Error') if isinstance(data, dict) else data}")
            return None
        try:
            return OMDbRatings.model_validate(data)
        except ValidationError as e:
            raise OMDbAPIError(f"Unexpected OMDb payload for {imdb_id}: {e.error_count()} errors")
