"""
Structured logging and timing helpers.

Provides:
- log_json: one JSON line per log entry, prefixed with [JSON]
- timeit: decorator measuring a call in milliseconds
- trace context (trace_id / request_id) carried in contextvars

Usage:
    @timeit("store.insert_many", backend="sql")
    def insert_many_if_absent(...):
        ...

    log_json("events.accepted", accepted=42)
"""

import functools
import json
import os
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

SERVICE_NAME = os.getenv("SERVICE_NAME", "event-analytics")

# Context variables for request tracing
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_trace_id() -> Optional[str]:
    """Get current trace ID from context."""
    return trace_id_var.get()


def get_request_id() -> Optional[str]:
    """Get current request ID from context."""
    return request_id_var.get()


def set_trace_context(trace_id: str, request_id: str) -> None:
    """Set trace context for the current request or task."""
    trace_id_var.set(trace_id)
    request_id_var.set(request_id)


def log_json(stage: str, **kv) -> None:
    """
    Output a structured JSON log line with [JSON] prefix.

    Fixed keys come first (ts_iso, ts_epoch, service, trace_id, request_id,
    level, stage, message); extra keys follow, None values are skipped.
    Values that json cannot encode are rendered with str().
    """
    now = datetime.now(timezone.utc)

    payload = {
        "ts_iso": now.isoformat(),
        "ts_epoch": int(now.timestamp()),
        "service": SERVICE_NAME,
        "trace_id": kv.pop("trace_id", None) or get_trace_id() or "no-trace",
        "request_id": kv.pop("request_id", None) or get_request_id() or "no-request",
        "level": kv.pop("level", "info"),
        "stage": stage,
        "message": kv.pop("message", f"Event: {stage}"),
    }

    for key, value in kv.items():
        if value is not None:
            payload[key] = value

    json_str = json.dumps(payload, separators=(",", ":"), default=str)
    print(f"[JSON] {json_str}", flush=True)


def timeit(stage: str, backend: Optional[str] = None) -> Callable:
    """
    Decorator to measure function execution time in milliseconds.

    Logs `stage`, `backend` (or "n/a"), `ms` and `ok`; on failure also the
    exception class, then re-raises.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed_ms = int(round((time.perf_counter() - t0) * 1000))
                log_json(
                    stage=stage,
                    level="warn",
                    backend=backend or "n/a",
                    ms=elapsed_ms,
                    ok=False,
                    error_type=type(e).__name__,
                )
                raise
            elapsed_ms = int(round((time.perf_counter() - t0) * 1000))
            log_json(stage=stage, backend=backend or "n/a", ms=elapsed_ms, ok=True)
            return result

        return wrapper

    return decorator
