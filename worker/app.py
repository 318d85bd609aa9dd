from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from api.core.metrics_store import log_json
from api.database import dispose_engine

app = Celery("worker", include=["worker.jobs.upsert_events"])
app.config_from_object("worker.celeryconfig")


@worker_process_init.connect
def _reset_db_pool(**kwargs):
    # Forked children must not share the parent's pooled connections
    dispose_engine()
    log_json(stage="worker.process.init")


@worker_process_shutdown.connect
def _close_db_pool(**kwargs):
    dispose_engine()


if __name__ == "__main__":
    app.start()
