"""
Ingestion orchestration.

normalize -> in-batch dedup -> durable queue -> fast-path buffer ->
async cache invalidation. The queue submit is the only step that can fail
the request; buffering and invalidation are best-effort.
"""

from typing import Any, List, Optional

from api.cache import AnalyticsCache
from api.core.metrics import events_accepted_total, events_batch_dedup_total
from api.core.metrics_store import log_json
from api.dedup import BufferFlusher, EventBuffer, dedupe_batch
from api.normalize.events import (
    EventRecord,
    normalize_batch,
    normalize_event,
    scopes_of,
)
from api.queue import EventQueue
from api.store import EventStore


class IngestionService:
    """
    Owns the fast-path buffer and its flusher; shared by all requests of
    one API process.
    """

    def __init__(
        self,
        queue: EventQueue,
        store: Optional[EventStore] = None,
        cache: Optional[AnalyticsCache] = None,
        buffer: Optional[EventBuffer] = None,
        max_batch: int = 1000,
        fast_path: bool = True,
        flush_interval_sec: float = 1.0,
    ):
        self.queue = queue
        self.store = store
        self.cache = cache
        self.max_batch = max_batch
        # The fast path needs somewhere to flush to
        self.fast_path = fast_path and store is not None
        self.buffer = buffer if buffer is not None else EventBuffer()
        self.flusher = BufferFlusher(self.buffer, self._persist, flush_interval_sec)

    def start(self) -> None:
        if self.fast_path:
            self.flusher.start()

    def stop(self) -> None:
        """Stop the flush timer and flush what is left."""
        if self.fast_path:
            self.flusher.stop(drain=True)

    def _persist(self, records: List[EventRecord]) -> int:
        stats = self.store.insert_many_if_absent(records)
        if self.cache is not None and stats["inserted_scopes"]:
            self.cache.invalidate_scopes(stats["inserted_scopes"])
        return stats["inserted"]

    def _accept(self, records: List[EventRecord]) -> int:
        # Failure here fails the request; the client retries the same payload
        self.queue.submit(records)

        if self.fast_path:
            self.buffer.add(records)

        if self.cache is not None:
            self.cache.invalidate_scopes_async(scopes_of(records))

        events_accepted_total.inc(value=len(records))
        return len(records)

    def ingest_one(self, payload: Any) -> int:
        record = normalize_event(payload)
        return self._accept([record])

    def ingest_batch(self, payloads: Any) -> int:
        """Returns the accepted count: distinct identities in the batch."""
        records = normalize_batch(payloads, max_batch=self.max_batch)
        deduped = dedupe_batch(records)
        dropped = len(records) - len(deduped)
        if dropped:
            events_batch_dedup_total.inc(value=dropped)
            log_json(
                stage="ingest.batch.dedup",
                received=len(records),
                accepted=len(deduped),
                dropped=dropped,
            )
        return self._accept(deduped)
