"""Service configuration loaded from the environment"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

# Local runs only: pick up a .env from the working tree without overriding
# variables that are already injected
load_dotenv(find_dotenv(usecwd=True), override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for the API process and the worker"""

    database_url: Optional[str]
    redis_url: str
    broker_url: str
    events_queue: str
    max_batch_size: int
    buffer_flush_interval_sec: float
    buffer_dedup_window_sec: float
    fast_path_enabled: bool
    cache_enabled: bool
    cache_ttl_sec: int
    redis_socket_timeout_sec: float
    funnel_max_steps: int
    retention_max_days: int
    journey_default_limit: int
    journey_max_limit: int
    worker_max_retries: int
    worker_concurrency: int

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables"""
        redis_url = os.getenv("REDIS_URL", "redis://redis:6379/0")
        return cls(
            database_url=os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL"),
            redis_url=redis_url,
            broker_url=os.getenv("CELERY_BROKER_URL", redis_url),
            events_queue=os.getenv("EVENTS_QUEUE", "events"),
            max_batch_size=_env_int("MAX_BATCH_SIZE", 1000),
            buffer_flush_interval_sec=_env_float("BUFFER_FLUSH_INTERVAL_SEC", 1.0),
            buffer_dedup_window_sec=_env_float("BUFFER_DEDUP_WINDOW_SEC", 5.0),
            fast_path_enabled=_env_bool("FAST_PATH_ENABLED", True),
            cache_enabled=_env_bool("CACHE_ENABLED", True),
            cache_ttl_sec=_env_int("CACHE_TTL_SEC", 300),
            redis_socket_timeout_sec=_env_float("REDIS_SOCKET_TIMEOUT_SEC", 0.5),
            funnel_max_steps=_env_int("FUNNEL_MAX_STEPS", 20),
            retention_max_days=_env_int("RETENTION_MAX_DAYS", 365),
            journey_default_limit=_env_int("JOURNEY_DEFAULT_LIMIT", 100),
            journey_max_limit=_env_int("JOURNEY_MAX_LIMIT", 1000),
            worker_max_retries=_env_int("WORKER_MAX_RETRIES", 5),
            worker_concurrency=_env_int("CELERY_CONCURRENCY", 10),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, read once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
