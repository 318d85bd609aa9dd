"""Health and readiness routes"""

import time

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text as sa_text
from sqlalchemy.exc import SQLAlchemyError

from api.core.metrics import readyz_latency_ms
from api.core.metrics_store import log_json

router = APIRouter()


@router.get("/")
def root():
    return {"service": "event-analytics", "status": "ok"}


@router.get("/healthz")
def healthz():
    """Liveness check for container orchestration"""
    return {"status": "healthy"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness probe: the database and Redis must both answer."""
    t0 = time.time()
    log_json(stage="readyz.start", operation="readyz", status="begin")

    store = request.app.state.store
    try:
        with store.engine.connect() as conn:
            conn.execute(sa_text("SELECT 1")).scalar()
    except SQLAlchemyError as e:
        log_json(stage="readyz.db.error", level="warn", error=str(e)[:200])
        return Response(content="service unavailable", status_code=503)

    cache = request.app.state.cache
    if cache.enabled:
        try:
            cache.ping()
        except Exception as e:
            log_json(stage="readyz.redis.error", level="warn", error=str(e)[:200])
            return Response(content="service unavailable", status_code=503)

    latency_ms = int((time.time() - t0) * 1000)
    log_json(stage="readyz.ok", operation="readyz", status="ready", latency=latency_ms)
    readyz_latency_ms.observe(latency_ms)
    return JSONResponse(
        {"status": "ready", "latency_ms": latency_ms},
        headers={"Cache-Control": "no-store"},
    )
