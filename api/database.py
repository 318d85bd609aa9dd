"""
Database engine configuration.

Provides factory functions for the SQLAlchemy engine shared by the API
process (fast-path flush and analytics reads) and the worker (upserts).
"""

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from api.core.config import get_settings
from api.core.metrics_store import log_json


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        log_json(stage="db.config.invalid", level="warn", name=name, value=raw)
        return None


def build_engine(url: str) -> Engine:
    """
    Build a SQLAlchemy engine for `url`.

    Pool and statement-timeout tuning is read from the environment and only
    applied to server databases; SQLite urls get a plain engine.
    """
    create_kwargs = dict(echo=False, future=True, pool_pre_ping=True)

    if url.startswith("sqlite"):
        create_kwargs["connect_args"] = {"check_same_thread": False}
        return create_engine(url, **create_kwargs)

    for env_name, kwarg in (
        ("SQLALCHEMY_POOL_SIZE", "pool_size"),
        ("SQLALCHEMY_MAX_OVERFLOW", "max_overflow"),
        ("SQLALCHEMY_POOL_RECYCLE", "pool_recycle"),
        ("SQLALCHEMY_POOL_TIMEOUT", "pool_timeout"),
    ):
        value = _int_env(env_name)
        if value is not None:
            create_kwargs[kwarg] = value

    # Per-connection statement timeout bounds every persistence call
    stmt_timeout_ms = _int_env("PG_STATEMENT_TIMEOUT_MS")
    if stmt_timeout_ms:
        create_kwargs["connect_args"] = {
            "options": f"-c statement_timeout={stmt_timeout_ms}"
        }

    return create_engine(url, **create_kwargs)


def build_engine_from_env() -> Engine:
    """
    Build SQLAlchemy engine from DATABASE_URL / POSTGRES_URL.

    Raises:
        ValueError: when neither variable is set
    """
    url = get_settings().database_url
    if not url:
        raise ValueError("DATABASE_URL or POSTGRES_URL environment variable not set")
    return build_engine(url)


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine_from_env()
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None

