"""
Redis cache for analytics results.

- get / set: JSON values with a TTL
- invalidate_scope: SCAN-based pattern delete when new events land
- invalidate_scopes_async: the same, off the request thread

Every Redis failure is logged and absorbed: a failed get is a miss, a
failed set or invalidation is skipped. Callers never see CacheError.
"""

import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Iterable, Optional, Tuple

import redis

from api.core.best_effort import best_effort
from api.core.cache_keys import scope_patterns
from api.core.config import get_settings
from api.core.metrics import analytics_cache_total
from api.core.metrics_store import log_json
from api.errors import CacheError

# Global Redis client singleton
_redis_client = None
_redis_lock = threading.Lock()

SCAN_COUNT = 100
DELETE_CHUNK = 500


def get_redis_client() -> Optional["redis.Redis"]:
    """
    Get Redis client singleton with thread-safe initialization.

    Returns:
        Redis client if reachable, None otherwise
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    with _redis_lock:
        if _redis_client is not None:
            return _redis_client

        settings = get_settings()
        try:
            client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.redis_socket_timeout_sec,
                socket_connect_timeout=settings.redis_socket_timeout_sec,
            )
            client.ping()
            log_json(stage="redis.connect", status="success", url=settings.redis_url)
            _redis_client = client
        except redis.RedisError as e:
            log_json(stage="redis.connect.error", level="warn", error=str(e)[:200])
            _redis_client = None

    return _redis_client


class AnalyticsCache:
    """Cache for aggregation results, keyed by api.core.cache_keys.fingerprint."""

    def __init__(
        self,
        client: Optional[Any] = None,
        enabled: bool = True,
        default_ttl: int = 300,
        invalidation_workers: int = 2,
    ):
        """
        Args:
            client: redis.Redis-like client; resolved lazily from REDIS_URL when None
            enabled: False turns every call into a miss/no-op
            default_ttl: seconds, used when set() gets no ttl
        """
        self._client = client
        self.enabled = enabled
        self.default_ttl = default_ttl
        self._executor = ThreadPoolExecutor(
            max_workers=invalidation_workers, thread_name_prefix="cache-invalidate"
        )

    def _redis(self):
        if self._client is None:
            self._client = get_redis_client()
        if self._client is None:
            raise CacheError("redis unavailable")
        return self._client

    def ping(self) -> bool:
        """Raises when Redis is unreachable (readiness probe)."""
        return self._redis().ping()

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss or any cache failure."""
        if not self.enabled:
            return None
        result = best_effort("cache.get", self._get, key)
        if not result.ok:
            analytics_cache_total.inc(labels={"op": "get", "result": "error"})
            return None
        value = result.value
        analytics_cache_total.inc(
            labels={"op": "get", "result": "hit" if value is not None else "miss"}
        )
        return value

    def _get(self, key: str) -> Optional[Any]:
        raw = self._redis().get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            # Unreadable entry: treat as a miss, it will be overwritten
            log_json(stage="cache.get.corrupt", level="warn", key=key)
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store `value` as JSON. Returns False when the write was skipped."""
        if not self.enabled:
            return False
        ttl = self.default_ttl if ttl is None else ttl
        result = best_effort("cache.set", self._set, key, value, ttl)
        analytics_cache_total.inc(
            labels={"op": "set", "result": "ok" if result.ok else "error"}
        )
        return result.ok

    def _set(self, key: str, value: Any, ttl: int) -> None:
        payload = json.dumps(value, separators=(",", ":"), default=str)
        if ttl > 0:
            self._redis().set(key, payload, ex=ttl)
        else:
            self._redis().set(key, payload)

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching `pattern` using SCAN (never KEYS)."""
        client = self._redis()
        deleted = 0
        chunk = []
        for key in client.scan_iter(match=pattern, count=SCAN_COUNT):
            chunk.append(key)
            if len(chunk) >= DELETE_CHUNK:
                deleted += client.delete(*chunk)
                chunk = []
        if chunk:
            deleted += client.delete(*chunk)
        return deleted

    def invalidate_scope(self, org_id: Optional[str], project_id: Optional[str]) -> int:
        """
        Drop every cached query that could include events of this scope.

        Returns the number of keys deleted; patterns that fail are logged
        and skipped.
        """
        if not self.enabled:
            return 0
        deleted = 0
        for pattern in scope_patterns(org_id, project_id):
            result = best_effort("cache.invalidate", self.delete_pattern, pattern)
            deleted += result.value_or(0)
        analytics_cache_total.inc(labels={"op": "invalidate", "result": "ok"})
        log_json(
            stage="cache.invalidate",
            org_id=org_id,
            project_id=project_id,
            deleted=deleted,
        )
        return deleted

    def invalidate_scopes(self, scopes: Iterable[Tuple[Optional[str], Optional[str]]]) -> int:
        return sum(self.invalidate_scope(org, project) for org, project in set(scopes))

    def invalidate_scopes_async(
        self, scopes: Iterable[Tuple[Optional[str], Optional[str]]]
    ) -> Optional[Future]:
        """Schedule invalidation on the background pool; never blocks the caller."""
        if not self.enabled:
            return None
        scopes = list(set(scopes))
        if not scopes:
            return None
        result = best_effort(
            "cache.invalidate.schedule", self._executor.submit, self.invalidate_scopes, scopes
        )
        return result.value

    def close(self) -> None:
        self._executor.shutdown(wait=True)
