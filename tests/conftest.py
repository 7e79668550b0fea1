import os

# Settings are read at import time; keep tests off Redis and free of backoff sleeps
os.environ["METRICS_ENABLED"] = "false"
os.environ["RETRY_BASE_DELAY"] = "0"
os.environ["RETRY_ATTEMPTS"] = "1"
os.environ["OMDB_API_KEY"] = ""
os.environ.setdefault("TRAKT_CLIENT_ID", "test-client-id")
os.environ.setdefault("TMDB_API_KEY", "test-tmdb-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
