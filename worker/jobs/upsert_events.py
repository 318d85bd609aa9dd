"""
Upsert worker job.

Consumes `{"events": [...]}` batches from the durable queue and persists
each record with the same conditional insert the fast path uses. Safe to
run on redelivered or replayed batches.
"""

import time
from typing import Any, Dict, List, Optional

from celery import Task

from api.cache import AnalyticsCache
from api.core.config import get_settings
from api.core.metrics import events_upsert_batch_ms, events_upsert_total
from api.core.metrics_store import log_json, set_trace_context
from api.database import get_engine
from api.errors import PersistenceError, ValidationError
from api.normalize.events import EventRecord
from api.queue import UPSERT_TASK
from api.store import EventStore
from worker.app import app

_store: Optional[EventStore] = None
_cache: Optional[AnalyticsCache] = None


def get_store() -> EventStore:
    global _store
    if _store is None:
        _store = EventStore(get_engine())
    return _store


def get_cache() -> AnalyticsCache:
    global _cache
    if _cache is None:
        settings = get_settings()
        _cache = AnalyticsCache(enabled=settings.cache_enabled, default_ttl=settings.cache_ttl_sec)
    return _cache


class StoreUnavailable(PersistenceError):
    """Every record in a batch failed because the database was unreachable."""


def decode_records(payload: Any) -> List[EventRecord]:
    """Decode a queue message, logging and skipping records that do not parse."""
    if not isinstance(payload, dict) or not isinstance(payload.get("events"), list):
        log_json(stage="worker.upsert.bad_message", level="error", payload_type=type(payload).__name__)
        return []
    records = []
    for i, item in enumerate(payload["events"]):
        try:
            records.append(EventRecord.from_dict(item))
        except ValidationError as e:
            events_upsert_total.inc(labels={"result": "undecodable"})
            log_json(stage="worker.upsert.skip", level="warn", index=i, error=str(e)[:200])
    return records


def upsert_batch(
    payload: Any,
    store: Optional[EventStore] = None,
    cache: Optional[AnalyticsCache] = None,
) -> Dict[str, int]:
    """
    Persist one queued batch.

    Returns:
        {"received", "inserted", "duplicates", "failed"}

    Raises:
        StoreUnavailable: every record failed on a connection error, so the
            whole batch should be redelivered
    """
    store = store or get_store()
    cache = cache or get_cache()

    t0 = time.perf_counter()
    records = decode_records(payload)
    stats = store.insert_many_if_absent(records)

    events_upsert_total.inc(labels={"result": "inserted"}, value=stats["inserted"])
    events_upsert_total.inc(labels={"result": "duplicate"}, value=stats["duplicates"])
    events_upsert_total.inc(labels={"result": "failed"}, value=stats["failed"])

    if records and stats["connection_errors"] == len(records):
        raise StoreUnavailable(f"database unreachable for all {len(records)} records")

    if stats["inserted_scopes"]:
        cache.invalidate_scopes(stats["inserted_scopes"])

    elapsed_ms = int((time.perf_counter() - t0) * 1000)
    events_upsert_batch_ms.observe(elapsed_ms)

    events = payload.get("events") if isinstance(payload, dict) else None
    received = len(events) if isinstance(events, list) else 0
    result = {
        "received": received,
        "inserted": stats["inserted"],
        "duplicates": stats["duplicates"],
        # Undecodable records count as failed
        "failed": stats["failed"] + (received - len(records)),
    }
    log_json(stage="worker.upsert.done", ms=elapsed_ms, **result)
    return result


class UpsertTask(Task):
    """Retries with exponential backoff when the database is down"""

    max_retries = get_settings().worker_max_retries
    retry_backoff_base = 2
    retry_backoff_max = 300


@app.task(base=UpsertTask, bind=True, name=UPSERT_TASK)
def upsert_batch_task(self, payload: Dict[str, Any], trace_id: Optional[str] = None) -> Dict[str, int]:
    set_trace_context(trace_id or self.request.id or "", self.request.id or "")
    try:
        return upsert_batch(payload)
    except StoreUnavailable as e:
        countdown = min(self.retry_backoff_max, self.retry_backoff_base ** self.request.retries)
        log_json(
            stage="worker.upsert.retry",
            level="warn",
            attempt=self.request.retries + 1,
            countdown=countdown,
            error=str(e),
        )
        raise self.retry(exc=e, countdown=countdown)
