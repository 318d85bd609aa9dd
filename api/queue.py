"""
Durable queue bridge.

Publishes a normalized batch as one Celery task on the Redis broker. The
worker acknowledges late and rejects on worker loss, so delivery is
at-least-once; the upsert is idempotent, so redelivery is harmless.
A successful submit means "queued", not "persisted".
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from celery import Celery

from api.core.config import get_settings
from api.core.metrics import events_queue_submit_total
from api.core.metrics_store import get_trace_id, log_json
from api.errors import QueueUnavailable
from api.normalize.events import EventRecord

UPSERT_TASK = "events.upsert_batch"

# Bounded publish retries so a dead broker fails the request quickly
PUBLISH_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.2,
    "interval_max": 0.5,
}


@dataclass
class JobHandle:
    job_id: str
    size: int


def build_message(records: Sequence[EventRecord]) -> Dict[str, Any]:
    """Channel message: {"events": [record, ...]}"""
    return {"events": [r.to_dict() for r in records]}


def make_producer(broker_url: Optional[str] = None) -> Celery:
    """Producer-only Celery app; tasks are addressed by name."""
    settings = get_settings()
    app = Celery("events-producer", broker=broker_url or settings.broker_url)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        broker_connection_timeout=2,
    )
    return app


class EventQueue:
    def __init__(self, producer: Optional[Celery] = None, queue_name: Optional[str] = None):
        self._producer = producer
        self.queue_name = queue_name or get_settings().events_queue

    @property
    def producer(self) -> Celery:
        if self._producer is None:
            self._producer = make_producer()
        return self._producer

    def submit(self, records: List[EventRecord]) -> JobHandle:
        """
        Queue one batch as a single unit of work.

        Raises:
            QueueUnavailable: the broker did not accept the task
        """
        message = build_message(records)
        try:
            result = self.producer.send_task(
                UPSERT_TASK,
                args=[message],
                kwargs={"trace_id": get_trace_id()},
                queue=self.queue_name,
                retry=True,
                retry_policy=PUBLISH_RETRY_POLICY,
            )
        except Exception as e:
            events_queue_submit_total.inc(labels={"status": "error"})
            log_json(
                stage="queue.submit.error",
                level="error",
                size=len(records),
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            raise QueueUnavailable("event queue unavailable, retry later") from e

        events_queue_submit_total.inc(labels={"status": "ok"})
        log_json(stage="queue.submit", job_id=result.id, size=len(records))
        return JobHandle(job_id=result.id, size=len(records))
