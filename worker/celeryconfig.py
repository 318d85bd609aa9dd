import os

from api.core.config import get_settings

_settings = get_settings()

broker_url = _settings.broker_url
result_backend = os.getenv("CELERY_RESULT_BACKEND", _settings.redis_url)

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
result_expires = int(os.getenv("CELERY_RESULT_EXPIRES", "3600"))
timezone = "UTC"
enable_utc = True

# At-least-once delivery: ack after the task body ran, redeliver when the
# worker process dies mid-task
task_acks_late = True
task_reject_on_worker_lost = True
worker_prefetch_multiplier = int(os.getenv("CELERY_WORKER_PREFETCH", "1"))
worker_concurrency = _settings.worker_concurrency

broker_transport_options = {
    "visibility_timeout": int(os.getenv("CELERY_VISIBILITY_TIMEOUT", "3600")),
}

task_routes = {
    "events.upsert_batch": {"queue": _settings.events_queue},
}
