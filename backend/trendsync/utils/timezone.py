"""
Timezone utilities for trendsync.
Provides consistent UTC datetime handling and the date strings upstream APIs expect.
"""
from datetime import datetime, timezone
from typing import List, Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def today_iso(now: Optional[datetime] = None) -> str:
    """Current UTC date as YYYY-MM-DD."""
    return (ensure_utc(now) or utc_now()).date().isoformat()


def month_start_dates(now: Optional[datetime] = None, months: int = 6) -> List[str]:
    """
    First-of-month dates (YYYY-MM-01) for the current month and the previous
    months-1 months, newest first.
    """
    ref = ensure_utc(now) or utc_now()
    year, month = ref.year, ref.month
    out: List[str] = []
    for _ in range(months):
        out.append(f"{year:04d}-{month:02d}-01")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return out


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an upstream ISO timestamp ('2024-05-01T01:00:00.000Z') into aware UTC."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None
