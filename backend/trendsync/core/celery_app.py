from celery import Celery
from trendsync.core.config import settings

celery_app = Celery(
    "trendsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["trendsync.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,  # Restart worker after 100 tasks to prevent memory leaks
    worker_prefetch_multiplier=1,    # Process one task at a time

    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # Coordinator/processor on the sync queue, sweeps on maintenance
    task_routes={
        'trendsync.services.tasks.sync_trending_shows': {'queue': 'sync'},
        'trendsync.services.tasks.sync_trending_movies': {'queue': 'sync'},
        'trendsync.services.tasks.process_trending_tasks': {'queue': 'sync'},
        'trendsync.services.tasks.sync_calendar': {'queue': 'maintenance'},
        'trendsync.services.tasks.prune_calendar_airings': {'queue': 'maintenance'},
        'trendsync.services.tasks.backfill_ratings': {'queue': 'maintenance'},
        'trendsync.services.tasks.backfill_metadata': {'queue': 'maintenance'},
        'trendsync.services.tasks.report_sync_status': {'queue': 'maintenance'},
    },

    beat_schedule={
        "sync-trending-shows": {
            "task": "trendsync.services.tasks.sync_trending_shows",
            "schedule": 60 * 60 * 6,  # every 6 hours
        },
        "sync-trending-movies": {
            "task": "trendsync.services.tasks.sync_trending_movies",
            "schedule": 60 * 60 * 6,  # every 6 hours
        },
        "process-trending-tasks": {
            "task": "trendsync.services.tasks.process_trending_tasks",
            "schedule": 60 * 5,  # every 5 minutes drains up to 50 pending tasks
        },
        "sync-calendar": {
            "task": "trendsync.services.tasks.sync_calendar",
            "schedule": 60 * 60 * 12,  # every 12 hours
        },
        "prune-calendar": {
            "task": "trendsync.services.tasks.prune_calendar_airings",
            "schedule": 60 * 60 * 24,  # daily
        },
        "backfill-ratings": {
            "task": "trendsync.services.tasks.backfill_ratings",
            "schedule": 60 * 60,  # hourly
        },
        "backfill-metadata-shows": {
            "task": "trendsync.services.tasks.backfill_metadata",
            "schedule": 60 * 60,  # hourly
            "kwargs": {"media_type": "show"}
        },
        "backfill-metadata-movies": {
            "task": "trendsync.services.tasks.backfill_metadata",
            "schedule": 60 * 60,  # hourly
            "kwargs": {"media_type": "movie"}
        },
    },
    timezone="UTC",
)
