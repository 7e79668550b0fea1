"""
models.py

SQLAlchemy models for the trending sync: job/task queue, the media catalog and
every enrichment sub-table hanging off a media item.
"""
import json
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Float, Text, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base
from trendsync.utils.timezone import utc_now

Base = declarative_base()

JOB_KINDS = ("trending-shows", "trending-movies", "calendar", "backfill-ratings", "backfill-metadata")
TASK_STATUSES = ("pending", "processing", "done", "error")


class SyncJob(Base):
    """One scheduled run. Stats are a JSON object of snake_case counters written after the run's main step.

    Trending runs record `trending_fetched` (candidates returned by Trakt) and `tasks_queued`
    (new SyncTask rows); these are the trendingFetched/tasksQueued figures of a run report.
    """
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="running", index=True)
    stats = Column(Text, nullable=True)  # JSON object
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def stats_dict(self) -> dict:
        try:
            return json.loads(self.stats) if self.stats else {}
        except ValueError:
            return {}


class SyncTask(Base):
    """
    Queue unit of work: one media item within a job.
    Lifecycle: pending -> processing (attempts+1) -> done | error.
    """
    __tablename__ = "sync_tasks"

    id = Column(Integer, primary_key=True)
    job_id = Column(Integer, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    media_type = Column(String, nullable=False)  # 'show' or 'movie'
    payload = Column(Text, nullable=False)  # JSON TaskPayload
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('job_id', 'tmdb_id', 'media_type', name='uq_sync_tasks_job_item'),
        Index('ix_sync_tasks_status_created', 'status', 'created_at'),
    )


class MediaItem(Base):
    """Show or movie in the catalog, keyed by (tmdb_id, media_type). Never deleted by the sync."""
    __tablename__ = "media_items"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    media_type = Column(String, nullable=False, index=True)  # 'show' or 'movie'
    trakt_id = Column(Integer, nullable=True, index=True)
    trakt_slug = Column(String, nullable=True)
    imdb_id = Column(String, nullable=True, index=True)
    tvdb_id = Column(Integer, nullable=True)

    title = Column(String, nullable=False)
    original_title = Column(String, nullable=True)
    title_localized = Column(String, nullable=True)
    overview = Column(Text, nullable=True)
    overview_localized = Column(Text, nullable=True)
    tagline = Column(String, nullable=True)
    poster_path = Column(String, nullable=True)
    poster_localized = Column(String, nullable=True)
    backdrop_path = Column(String, nullable=True)
    original_language = Column(String, nullable=True)
    genres = Column(Text, nullable=True)  # JSON array of {id, name}
    videos = Column(Text, nullable=True)  # JSON array of preferred videos
    networks = Column(Text, nullable=True)  # JSON array of network names
    status = Column(String, nullable=True)
    content_rating = Column(String, nullable=True)  # primary region

    first_air_date = Column(String, nullable=True)  # YYYY-MM-DD (shows)
    release_date = Column(String, nullable=True)  # YYYY-MM-DD (movies)
    runtime = Column(Integer, nullable=True)
    number_of_seasons = Column(Integer, nullable=True)
    number_of_episodes = Column(Integer, nullable=True)
    latest_season_number = Column(Integer, nullable=True)
    latest_season_episodes = Column(Integer, nullable=True)
    last_episode_season = Column(Integer, nullable=True)
    last_episode_number = Column(Integer, nullable=True)
    last_episode_air_date = Column(String, nullable=True)
    next_episode_season = Column(Integer, nullable=True)
    next_episode_number = Column(Integer, nullable=True)
    next_episode_air_date = Column(String, nullable=True)

    # Ratings
    rating_tmdb = Column(Float, nullable=True)
    rating_tmdb_count = Column(Integer, nullable=True)
    popularity_tmdb = Column(Float, nullable=True)
    rating_trakt = Column(Float, nullable=True)
    rating_trakt_votes = Column(Integer, nullable=True)
    rating_imdb = Column(Float, nullable=True)
    imdb_votes = Column(Integer, nullable=True)
    rating_metacritic = Column(Integer, nullable=True)
    rating_rotten_tomatoes = Column(Integer, nullable=True)
    primary_rating = Column(Float, nullable=True, index=True)

    # Trend signals
    watchers = Column(Integer, nullable=True)
    trending_score = Column(Float, nullable=True, index=True)
    watchers_delta = Column(Integer, nullable=True)
    delta_3m = Column(Integer, nullable=True)
    trending_updated_at = Column(DateTime(timezone=True), nullable=True)

    is_bootstrap = Column(Boolean, default=False, nullable=False)  # minimal record created from a related link
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, index=True)

    __table_args__ = (
        UniqueConstraint('tmdb_id', 'media_type', name='uq_media_items_tmdb_media'),
        {'comment': 'Trending catalog of shows and movies'}
    )


class MediaRating(Base):
    """Aggregate rating per source (tmdb, trakt, imdb, metacritic)."""
    __tablename__ = "media_ratings"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False)
    avg = Column(Float, nullable=True)
    votes = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'source', name='uq_media_ratings_item_source'),
    )


class MediaRatingBucket(Base):
    """Vote-count histogram row; bucket is a rating value in [1, 10]."""
    __tablename__ = "media_rating_buckets"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False)
    bucket = Column(Integer, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'source', 'bucket', name='uq_media_rating_buckets_item_source_bucket'),
    )


class WatchProviderRegistry(Base):
    """Global provider registry keyed by TMDB provider id."""
    __tablename__ = "watch_provider_registry"

    id = Column(Integer, primary_key=True)
    provider_id = Column(Integer, nullable=False, unique=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, index=True)
    logo_path = Column(String, nullable=True)
    display_priority = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class MediaWatchProvider(Base):
    __tablename__ = "media_watch_providers"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    region = Column(String, nullable=False)
    provider_id = Column(Integer, nullable=False)
    provider_name = Column(String, nullable=True)
    logo_path = Column(String, nullable=True)
    link_url = Column(String, nullable=True)
    category = Column(String, nullable=False)  # flatrate | free | ads | rent | buy
    rank = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'region', 'provider_id', 'category', name='uq_media_watch_providers_key'),
    )


class MediaContentRating(Base):
    __tablename__ = "media_content_ratings"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    region = Column(String, nullable=False)
    rating = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'region', name='uq_media_content_ratings_item_region'),
    )


class MediaCast(Base):
    __tablename__ = "media_cast"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    person_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    character = Column(String, nullable=False, default="")  # '' when unknown so the unique key holds
    profile_path = Column(String, nullable=True)
    order = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'person_id', 'character', name='uq_media_cast_item_person_character'),
    )


class MediaVideo(Base):
    __tablename__ = "media_videos"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    site = Column(String, nullable=False)
    key = Column(String, nullable=False)
    name = Column(String, nullable=True)
    type = Column(String, nullable=True)
    locale = Column(String, nullable=True)
    official = Column(Boolean, nullable=True)
    published_at = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'site', 'key', name='uq_media_videos_item_site_key'),
    )


class WatchersSnapshot(Base):
    """Append-only watcher-count series; a row is written only when the value changes."""
    __tablename__ = "media_watchers_snapshots"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False)
    watchers = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_media_watchers_snapshots_item_created', 'media_item_id', 'created_at'),
    )


class MediaRelated(Base):
    """Outgoing related link; provenance is 'primary' (Trakt related) or 'secondary' (TMDB recommendations)."""
    __tablename__ = "media_related"

    id = Column(Integer, primary_key=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    related_media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False, index=True)
    provenance = Column(String, nullable=False)
    rank = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint('media_item_id', 'related_media_item_id', name='uq_media_related_pair'),
    )


class ShowAiring(Base):
    """Upcoming episode airing from the Trakt calendar."""
    __tablename__ = "show_airings"

    id = Column(Integer, primary_key=True)
    tmdb_id = Column(Integer, nullable=False, index=True)
    media_item_id = Column(Integer, ForeignKey("media_items.id", ondelete="SET NULL"), nullable=True, index=True)
    trakt_id = Column(Integer, nullable=True)
    title = Column(String, nullable=True)
    episode_title = Column(String, nullable=True)
    season = Column(Integer, nullable=False)
    episode = Column(Integer, nullable=False)
    air_date = Column(DateTime(timezone=True), nullable=True, index=True)
    network = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('tmdb_id', 'season', 'episode', name='uq_show_airings_episode'),
    )
