import os
from typing import Optional
from pydantic_settings import BaseSettings


CALENDAR_DAYS_DEFAULT = 30
CALENDAR_DAYS_MAX = 30
PROCESSOR_BATCH_MAX = 50


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class Settings(BaseSettings):
    database_url: str = os.getenv(
        "DATABASE_URL",
        f"postgresql+asyncpg://{os.getenv('POSTGRES_USER', 'trendsync')}:{os.getenv('POSTGRES_PASSWORD', 'trendsync')}@db:5432/{os.getenv('POSTGRES_DB', 'trendsync')}",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Upstream credentials (OMDb is optional; empty disables critic ratings)
    trakt_client_id: str = os.getenv("TRAKT_CLIENT_ID", "")
    tmdb_api_key: str = os.getenv("TMDB_API_KEY", "")
    omdb_api_key: str = os.getenv("OMDB_API_KEY", "")
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # Raw value; use resolve_calendar_days() to read it
    calendar_days: Optional[str] = os.getenv("CALENDAR_DAYS")

    # Batch sizes & concurrency
    sync_concurrency: int = _int_env("SYNC_CONCURRENCY", 6)
    trending_batch_size: int = _int_env("TRENDING_BATCH_SIZE", 100)
    processor_batch_size: int = _int_env("PROCESSOR_BATCH_SIZE", PROCESSOR_BATCH_MAX)
    ratings_backfill_limit: int = _int_env("RATINGS_BACKFILL_LIMIT", 100)
    metadata_backfill_limit: int = _int_env("METADATA_BACKFILL_LIMIT", 50)
    calendar_prune_limit: int = _int_env("CALENDAR_PRUNE_LIMIT", 500)

    # Retry policy for upstream calls
    retry_attempts: int = _int_env("RETRY_ATTEMPTS", 3)
    retry_base_delay: float = float(os.getenv("RETRY_BASE_DELAY", "0.3"))

    # Regions for providers / content ratings; the primary one feeds media_items.content_rating
    primary_region: str = os.getenv("PRIMARY_REGION", "UA")
    secondary_region: str = os.getenv("SECONDARY_REGION", "US")
    translation_language: str = os.getenv("TRANSLATION_LANGUAGE", "uk-UA")

    metrics_enabled: bool = os.getenv("METRICS_ENABLED", "true").lower() == "true"

    @property
    def regions(self) -> tuple:
        return (self.primary_region, self.secondary_region)


def resolve_calendar_days(value=None) -> int:
    """Clamp a calendar window into [1, 30]; missing or invalid input means 30."""
    raw = settings.calendar_days if value is None else value
    try:
        days = int(raw)
    except (TypeError, ValueError):
        return CALENDAR_DAYS_DEFAULT
    return max(1, min(CALENDAR_DAYS_MAX, days))


def resolve_processor_limit(value=None) -> int:
    raw = settings.processor_batch_size if value is None else value
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return PROCESSOR_BATCH_MAX
    return max(1, min(PROCESSOR_BATCH_MAX, limit))


settings = Settings()
