"""
In-process metric series for the event pipeline, rendered in Prometheus
text format by /metrics next to the prometheus_client registry.
"""
import threading
from collections import defaultdict
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry
from prometheus_client import Counter as PromCounter

Labels = Optional[Dict[str, str]]


def _label_str(labels: Labels, **extra: str) -> str:
    merged = dict(labels or {})
    merged.update(extra)
    if not merged:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in sorted(merged.items())) + "}"


class _Series:
    kind = "untyped"

    def __init__(self, name: str, help_text: str):
        self.name = name
        self.help = help_text
        self.lock = threading.Lock()
        # label string -> original labels, for re-rendering with extra labels
        self._labels: Dict[str, Dict[str, str]] = {}

    def _key(self, labels: Labels) -> str:
        key = _label_str(labels)
        self._labels.setdefault(key, dict(labels or {}))
        return key

    def _samples(self) -> List[str]:
        raise NotImplementedError

    def export(self) -> str:
        with self.lock:
            samples = self._samples()
        return "\n".join([f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"] + samples)


class Counter(_Series):
    kind = "counter"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)
        self.values: Dict[str, float] = defaultdict(float)

    def inc(self, labels: Labels = None, value: int = 1) -> None:
        with self.lock:
            self.values[self._key(labels)] += value

    def get(self, labels: Labels = None) -> float:
        with self.lock:
            return self.values.get(_label_str(labels), 0.0)

    def _samples(self) -> List[str]:
        return [f"{self.name}{key} {value}" for key, value in self.values.items()]


class Gauge(_Series):
    kind = "gauge"

    def __init__(self, name: str, help_text: str):
        super().__init__(name, help_text)
        self.values: Dict[str, float] = {}

    def set(self, value: float, labels: Labels = None) -> None:
        with self.lock:
            self.values[self._key(labels)] = value

    def _samples(self) -> List[str]:
        return [f"{self.name}{key} {value}" for key, value in self.values.items()]


class Histogram(_Series):
    """Millisecond histogram; only per-bucket counts are kept, not samples."""

    kind = "histogram"

    def __init__(self, name: str, help_text: str, buckets: List[int]):
        super().__init__(name, help_text)
        self.buckets = sorted(buckets)
        self.bucket_counts: Dict[str, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self.sums: Dict[str, float] = defaultdict(float)
        self.counts: Dict[str, int] = defaultdict(int)

    def observe(self, value_ms: float, labels: Labels = None) -> None:
        with self.lock:
            key = self._key(labels)
            per_bucket = self.bucket_counts[key]
            for i, bound in enumerate(self.buckets):
                if value_ms <= bound:
                    per_bucket[i] += 1
            self.sums[key] += value_ms
            self.counts[key] += 1

    def _samples(self) -> List[str]:
        lines = []
        for key, count in self.counts.items():
            labels = self._labels[key]
            bounds = [str(b) for b in self.buckets] + ["+Inf"]
            cumulative = self.bucket_counts[key] + [count]
            for bound, c in zip(bounds, cumulative):
                lines.append(f"{self.name}_bucket{_label_str(labels, le=bound)} {c}")
            lines.append(f"{self.name}_sum{key} {self.sums[key]}")
            lines.append(f"{self.name}_count{key} {count}")
        return lines


_registry: Dict[str, _Series] = {}
_registry_lock = threading.Lock()

# prometheus_client registry for HTTP-level counters (see api.main)
PROM_REGISTRY = CollectorRegistry()
http_requests_total = PromCounter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=PROM_REGISTRY,
)


def _register(cls, name: str, *args):
    with _registry_lock:
        if name not in _registry:
            _registry[name] = cls(name, *args)
        return _registry[name]


def counter(name: str, help_text: str) -> Counter:
    return _register(Counter, name, help_text)


def gauge(name: str, help_text: str) -> Gauge:
    return _register(Gauge, name, help_text)


def histogram(name: str, help_text: str, buckets: List[int]) -> Histogram:
    return _register(Histogram, name, help_text, buckets)


def export_text() -> str:
    """All registered series in Prometheus text format."""
    with _registry_lock:
        series = list(_registry.values())
    return "\n\n".join(s.export() for s in series)


# Ingestion
events_accepted_total = counter(
    "events_accepted_total",
    "Events accepted by the HTTP boundary after batch dedup"
)
events_batch_dedup_total = counter(
    "events_batch_dedup_total",
    "Events dropped as in-batch duplicates"
)
events_queue_submit_total = counter(
    "events_queue_submit_total",
    "Durable queue submissions by status"
)
events_buffer_flushed_total = counter(
    "events_buffer_flushed_total",
    "Fast-path buffer flush outcomes per record"
)
events_buffer_size = gauge(
    "events_buffer_size",
    "Records waiting in the fast-path buffer at the last flush"
)

# Worker
events_upsert_total = counter(
    "events_upsert_total",
    "Conditional upserts by result (inserted, duplicate, failed)"
)
events_upsert_batch_ms = histogram(
    "events_upsert_batch_ms",
    "Upsert batch processing time in milliseconds",
    [5, 10, 25, 50, 100, 250, 500, 1000, 5000]
)

# Read path
analytics_cache_total = counter(
    "analytics_cache_total",
    "Analytics cache operations by op and result"
)
analytics_query_ms = histogram(
    "analytics_query_ms",
    "Aggregation compute time on cache miss in milliseconds",
    [5, 10, 25, 50, 100, 250, 500, 1000, 5000]
)
readyz_latency_ms = histogram(
    "readyz_latency_ms",
    "Readiness probe latency in milliseconds",
    [5, 10, 20, 50, 100, 200, 500, 1000]
)

# Initialize with zero values for visibility on /metrics
events_accepted_total.inc(value=0)
events_batch_dedup_total.inc(value=0)
events_upsert_total.inc(labels={"result": "inserted"}, value=0)
events_buffer_size.set(0.0)
