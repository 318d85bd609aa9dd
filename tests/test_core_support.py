import json

from api.core import metrics
from api.core.best_effort import best_effort
from api.core.config import Settings, get_settings, reset_settings
from api.core.metrics_store import log_json, set_trace_context


def test_settings_defaults(monkeypatch):
    for name in ("MAX_BATCH_SIZE", "CACHE_TTL_SEC", "FAST_PATH_ENABLED", "EVENTS_QUEUE", "CELERY_BROKER_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/3")
    s = Settings.from_env()
    assert s.max_batch_size == 1000
    assert s.cache_ttl_sec == 300
    assert s.fast_path_enabled is True
    assert s.events_queue == "events"
    assert s.broker_url == "redis://localhost:6379/3"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("MAX_BATCH_SIZE", "50")
    monkeypatch.setenv("FAST_PATH_ENABLED", "false")
    monkeypatch.setenv("BUFFER_FLUSH_INTERVAL_SEC", "0.25")
    monkeypatch.setenv("FUNNEL_MAX_STEPS", "not-a-number")
    monkeypatch.setenv("POSTGRES_URL", "postgresql://u:p@db/events")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    s = Settings.from_env()
    assert s.max_batch_size == 50
    assert s.fast_path_enabled is False
    assert s.buffer_flush_interval_sec == 0.25
    assert s.funnel_max_steps == 20
    assert s.database_url == "postgresql://u:p@db/events"


def test_get_settings_is_cached(monkeypatch):
    reset_settings()
    monkeypatch.setenv("CACHE_TTL_SEC", "42")
    try:
        assert get_settings().cache_ttl_sec == 42
        monkeypatch.setenv("CACHE_TTL_SEC", "7")
        assert get_settings().cache_ttl_sec == 42
    finally:
        reset_settings()


def test_log_json_carries_trace_context(capsys):
    set_trace_context("trace-abc", "req-1")
    log_json("unit.test", count=3, skipped=None)
    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert line.startswith("[JSON] ")
    payload = json.loads(line[len("[JSON] "):])
    assert payload["stage"] == "unit.test"
    assert payload["trace_id"] == "trace-abc"
    assert payload["request_id"] == "req-1"
    assert payload["count"] == 3
    assert "skipped" not in payload


def test_best_effort_wraps_failures(capsys):
    ok = best_effort("unit.ok", lambda x: x * 2, 21)
    assert ok.ok and ok.value == 42

    def boom():
        raise RuntimeError("nope")

    failed = best_effort("unit.fail", boom)
    assert not failed.ok
    assert failed.value_or("fallback") == "fallback"
    assert "unit.fail.degrade" in capsys.readouterr().out


def test_registry_export_text():
    c = metrics.counter("unit_test_total", "unit test counter")
    c.inc(labels={"result": "ok"}, value=2)
    h = metrics.histogram("unit_test_ms", "unit test latency", [10, 100])
    h.observe(5)
    h.observe(50)
    text = metrics.export_text()
    assert 'unit_test_total{result="ok"} 2.0' in text
    assert 'unit_test_ms_bucket{le="10"} 1' in text
    assert 'unit_test_ms_bucket{le="100"} 2' in text
    assert "unit_test_ms_count 2" in text
    assert metrics.counter("unit_test_total", "again") is c


def test_labeled_histogram_buckets_carry_series_labels():
    h = metrics.histogram("unit_labeled_ms", "labeled latency", [10])
    h.observe(3, labels={"kind": "funnel"})
    h.observe(30, labels={"kind": "funnel"})
    text = h.export()
    assert 'unit_labeled_ms_bucket{kind="funnel",le="10"} 1' in text
    assert 'unit_labeled_ms_bucket{kind="funnel",le="+Inf"} 2' in text
    assert 'unit_labeled_ms_sum{kind="funnel"} 33.0' in text
    assert "# TYPE unit_labeled_ms histogram" in text
