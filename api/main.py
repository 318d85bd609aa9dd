import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.cache import AnalyticsCache
from api.core.config import get_settings
from api.core.metrics import http_requests_total
from api.core.metrics_store import log_json, set_trace_context
from api.database import dispose_engine, get_engine
from api.dedup import EventBuffer
from api.errors import AnalyticsError
from api.queue import EventQueue
from api.routes import analytics, events, health, metrics
from api.services.analytics import AnalyticsEngine
from api.services.ingestion import IngestionService
from api.store import EventStore


def build_services(app: FastAPI, store: EventStore, cache: AnalyticsCache, queue: EventQueue):
    """Wire the ingestion and analytics services onto app.state."""
    settings = get_settings()
    app.state.store = store
    app.state.cache = cache
    app.state.ingestion = IngestionService(
        queue,
        store=store,
        cache=cache,
        buffer=EventBuffer(window_sec=settings.buffer_dedup_window_sec),
        max_batch=settings.max_batch_size,
        fast_path=settings.fast_path_enabled,
        flush_interval_sec=settings.buffer_flush_interval_sec,
    )
    app.state.analytics = AnalyticsEngine(
        store,
        cache=cache,
        ttl=settings.cache_ttl_sec,
        funnel_max_steps=settings.funnel_max_steps,
        retention_max_days=settings.retention_max_days,
        journey_default_limit=settings.journey_default_limit,
        journey_max_limit=settings.journey_max_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    settings = get_settings()
    # Services may be pre-wired (tests); only build what is missing
    if getattr(app.state, "ingestion", None) is None:
        store = EventStore(get_engine())
        if store.dialect == "sqlite":
            store.create_schema()
        cache = AnalyticsCache(enabled=settings.cache_enabled, default_ttl=settings.cache_ttl_sec)
        build_services(app, store, cache, EventQueue())

    app.state.ingestion.start()
    log_json(
        stage="app.startup",
        fast_path=app.state.ingestion.fast_path,
        cache_enabled=app.state.cache.enabled,
        max_batch=settings.max_batch_size,
    )

    yield

    app.state.ingestion.stop()
    app.state.cache.close()
    dispose_engine()
    log_json(stage="app.shutdown")


app = FastAPI(title="Event Analytics API", lifespan=lifespan)


@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    trace_id = uuid.uuid4().hex[:16]
    request_id = uuid.uuid4().hex[:8]

    set_trace_context(trace_id, request_id)
    request.state.trace_id = trace_id
    request.state.request_id = request_id

    start_time = time.time()
    log_json(
        "http.request.start",
        method=str(request.method),
        path=str(request.url.path),
        query=str(request.url.query) if request.url.query else None,
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        log_json(
            "http.request.error",
            level="error",
            method=str(request.method),
            path=str(request.url.path),
            error=str(e)[:200],
            duration_ms=duration_ms,
        )
        http_requests_total.labels(
            method=str(request.method), endpoint=str(request.url.path), status_code="500"
        ).inc()
        raise

    duration_ms = int((time.time() - start_time) * 1000)
    log_json(
        "http.request.end",
        method=str(request.method),
        path=str(request.url.path),
        status=response.status_code,
        duration_ms=duration_ms,
    )
    http_requests_total.labels(
        method=str(request.method),
        endpoint=str(request.url.path),
        status_code=str(response.status_code),
    ).inc()

    response.headers["X-Trace-Id"] = trace_id
    response.headers["X-Request-Id"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    log_json(
        stage="http.error",
        level="warn" if exc.status_code < 500 else "error",
        path=str(request.url.path),
        error_type=type(exc).__name__,
        error=str(exc)[:200],
    )
    return _error(exc.status_code, exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return _error(400, messages[0] if len(messages) == 1 else messages)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log_json(
        stage="http.unhandled",
        level="error",
        path=str(request.url.path),
        error_type=type(exc).__name__,
        error=str(exc)[:200],
    )
    return _error(500, "Internal server error")


app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(events.router)
app.include_router(analytics.router)
