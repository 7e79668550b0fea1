"""
monthly.py

Six calendar-month watcher maps (m0 = current month .. m5) from Trakt's monthly
most-watched lists, built once per processor batch.
"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from trendsync.services.catalog import CatalogClients
from trendsync.services.scoring import empty_monthly_maps, to_watchers_map
from trendsync.utils.timezone import month_start_dates

logger = logging.getLogger(__name__)

MONTHLY_LIMIT = 200


async def build_monthly_maps(clients: CatalogClients, media_type: str = "show", now: Optional[datetime] = None) -> List[Dict[int, int]]:
    """Returns [m0..m5] of {tmdb_id: watchers}; any upstream failure yields six empty maps."""
    starts = month_start_dates(now, months=6)
    try:
        lists = await asyncio.gather(*(
            clients.trakt.get_watched(media_type, "monthly", start, MONTHLY_LIMIT) for start in starts
        ))
    except Exception as e:
        logger.warning(f"Monthly watcher maps unavailable for {media_type}: {e}")
        return empty_monthly_maps()
    return [to_watchers_map(items) for items in lists]
