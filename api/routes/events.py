"""
Event ingestion routes.

Both endpoints answer 202: the events are queued, not yet persisted.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends

from api.core.metrics_store import log_json
from api.deps import get_ingestion
from api.schemas.events import IngestResponse
from api.services.ingestion import IngestionService

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", status_code=202, response_model=IngestResponse)
def ingest_event(
    payload: Any = Body(...),
    ingestion: IngestionService = Depends(get_ingestion),
):
    """Accept a single event."""
    accepted = ingestion.ingest_one(payload)
    return IngestResponse(accepted=accepted)


@router.post("/batch", status_code=202, response_model=IngestResponse)
def ingest_batch(
    payload: Any = Body(...),
    ingestion: IngestionService = Depends(get_ingestion),
):
    """
    Accept up to MAX_BATCH_SIZE events in one request.

    `accepted` counts distinct identities; repeats inside the batch are
    dropped before queueing.
    """
    accepted = ingestion.ingest_batch(payload)
    log_json(stage="ingest.batch", received=len(payload), accepted=accepted)
    return IngestResponse(accepted=accepted)
