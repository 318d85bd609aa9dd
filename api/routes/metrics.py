"""
Metrics endpoint for Prometheus scraping.

Exposes the in-process registry (api.core.metrics) and the prometheus_client
registry in Prometheus v0.0.4 text format. Controlled by METRICS_EXPOSED.
"""

import os

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import generate_latest

from api.core import metrics as metrics_core
from api.core.metrics import PROM_REGISTRY, events_buffer_size
from api.core.metrics_store import log_json

router = APIRouter()

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics")
@router.head("/metrics")
def metrics_endpoint(request: Request):
    """
    Expose metrics in Prometheus text format.

    Returns 404 if METRICS_EXPOSED is false.
    """
    metrics_exposed = os.getenv("METRICS_EXPOSED", "true").lower() == "true"
    if not metrics_exposed:
        log_json(stage="metrics.denied", reason="METRICS_EXPOSED=false")
        return Response(content="Not Found", status_code=404)

    ingestion = getattr(request.app.state, "ingestion", None)
    if ingestion is not None:
        events_buffer_size.set(float(len(ingestion.buffer)))

    sections = []
    core_text = metrics_core.export_text().strip()
    if core_text:
        sections.append(core_text)
    prom_text = generate_latest(PROM_REGISTRY).decode("utf-8").strip()
    if prom_text:
        sections.append(prom_text)

    return PlainTextResponse(
        content="\n\n".join(sections) + "\n",
        media_type=CONTENT_TYPE,
        status_code=200,
    )
