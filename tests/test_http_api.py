import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from api.queue import EventQueue
from api.services.ingestion import IngestionService
from worker.jobs.upsert_events import upsert_batch

from conftest import FakeProducer


def _wire(store, cache, producer):
    queue = EventQueue(producer=producer, queue_name="events")
    build_services(app, store, cache, queue)
    # No timer thread and no background invalidation; the worker is driven
    # by hand and invalidates synchronously
    app.state.ingestion = IngestionService(queue, store=store, fast_path=False)


@pytest.fixture
def client(store, cache, producer):
    _wire(store, cache, producer)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    for name in ("store", "cache", "ingestion", "analytics"):
        delattr(app.state, name)


def _run_worker(producer, store, cache):
    for message in producer.messages:
        upsert_batch(message, store=store, cache=cache)
    producer.sent.clear()


def test_end_to_end_funnel(client, producer, store, cache):
    r1 = client.post(
        "/events",
        json={"eventName": "signup", "userId": "u1", "orgId": "o", "projectId": "p",
              "timestamp": "2024-01-01T00:00:00Z"},
    )
    r2 = client.post(
        "/events",
        json={"eventName": "purchase", "userId": "u1", "orgId": "o", "projectId": "p",
              "timestamp": "2024-01-02T00:00:00Z"},
    )
    assert r1.status_code == 202 and r1.json() == {"success": True, "accepted": 1}
    assert r2.status_code == 202
    _run_worker(producer, store, cache)

    resp = client.post(
        "/analytics/funnels",
        json={"steps": ["signup", "purchase"], "orgId": "o", "projectId": "p"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["totalUsers"] == 1
    assert body["steps"] == [
        {"step": "signup", "users": 1, "users_in_order": 1},
        {"step": "purchase", "users": 1, "users_in_order": 1},
    ]
    assert "X-Trace-Id" in resp.headers and "X-Request-Id" in resp.headers


def test_batch_duplicates_counted_once_and_persisted_once(client, producer, store, cache):
    event = {"eventName": "view", "userId": "u1", "eventId": "dup-1"}
    resp = client.post("/events/batch", json=[event, event, {"eventName": "view", "userId": "u2"}])
    assert resp.status_code == 202
    assert resp.json()["accepted"] == 2

    # Client retry of the whole request
    client.post("/events/batch", json=[event])
    _run_worker(producer, store, cache)
    assert store.count() == 2


def test_validation_errors_are_400(client, producer):
    resp = client.post("/events", json={"eventName": "view"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert "userId" in str(resp.json()["error"])

    assert client.post("/events/batch", json=[]).status_code == 400
    assert client.post("/events/batch", json={"eventName": "x"}).status_code == 400
    assert client.post("/events", content=b"{not json", headers={"content-type": "application/json"}).status_code == 400
    assert producer.sent == []


def test_oversized_batch_is_400(client):
    resp = client.post("/events/batch", json=[{"eventName": "v", "userId": "u"}] * 1001)
    assert resp.status_code == 400
    assert "1000" in resp.json()["error"]


def test_queue_down_is_500(store, cache):
    _wire(store, cache, FakeProducer(fail=True))
    try:
        with TestClient(app, raise_server_exceptions=False) as c:
            resp = c.post("/events", json={"eventName": "view", "userId": "u1"})
    finally:
        for name in ("store", "cache", "ingestion", "analytics"):
            delattr(app.state, name)
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "event queue unavailable, retry later"}


def test_metrics_endpoint_and_cache_flag(client, producer, store, cache):
    client.post(
        "/events/batch",
        json=[
            {"eventName": "view", "userId": "u1", "timestamp": "2024-01-01T10:00:00Z"},
            {"eventName": "view", "userId": "u2", "timestamp": "2024-01-01T11:00:00Z"},
        ],
    )
    _run_worker(producer, store, cache)
    params = {"event": "view", "interval": "daily", "startDate": "2024-01-01", "endDate": "2024-01-31"}

    first = client.get("/analytics/metrics", params=params).json()
    assert first == {
        "success": True,
        "event": "view",
        "interval": "daily",
        "data": [{"period": "2024-01-01", "count": 2}],
    }
    second = client.get("/analytics/metrics", params=params).json()
    assert second["cached"] is True


def test_metrics_requires_event_and_valid_interval(client):
    resp = client.get("/analytics/metrics")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "event query param is required"}
    assert client.get("/analytics/metrics", params={"event": "v", "interval": "yearly"}).status_code == 400
    assert client.get("/analytics/metrics", params={"event": "v", "startDate": "soon"}).status_code == 400


def test_funnel_requires_steps(client):
    assert client.post("/analytics/funnels", json={}).status_code == 400
    assert client.post("/analytics/funnels", json={"steps": []}).status_code == 400


def test_lone_surrogate_in_body_is_a_client_error(client, producer):
    headers = {"Content-Type": "application/json"}
    resp = client.post(
        "/events",
        content='{"userId":"u1","eventName":"view","metadata":{"k":"\\ud800"}}',
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert producer.sent == []

    resp = client.post("/analytics/funnels", content='{"steps":["\\ud800"]}', headers=headers)
    assert resp.status_code == 400


def test_retention_and_journey_routes(client, producer, store, cache):
    client.post(
        "/events/batch",
        json=[
            {"eventName": "signup", "userId": "u1", "timestamp": "2024-01-01T09:00:00Z"},
            {"eventName": "signup", "userId": "u2", "timestamp": "2024-01-01T10:00:00Z"},
            {"eventName": "view", "userId": "u1", "timestamp": "2024-01-02T09:00:00Z"},
        ],
    )
    _run_worker(producer, store, cache)

    retention = client.get(
        "/analytics/retention", params={"cohort": "signup", "startDate": "2024-01-01", "days": 2}
    ).json()
    assert retention["cohortSize"] == 2
    assert retention["retention"] == [
        {"day": 0, "count": 2, "percent": 100.0},
        {"day": 1, "count": 1, "percent": 50.0},
    ]
    assert client.get("/analytics/retention").status_code == 400
    assert client.get("/analytics/retention", params={"cohort": "signup", "days": 0}).status_code == 400

    journey = client.get("/analytics/users/u1/journey", params={"limit": 10}).json()
    assert journey["success"] is True
    assert [e["eventName"] for e in journey["events"]] == ["signup", "view"]


def test_health_routes(client):
    assert client.get("/healthz").json() == {"status": "healthy"}
    assert client.get("/").status_code == 200
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


def test_readyz_fails_when_redis_is_down(client, fake_redis):
    fake_redis.fail = True
    assert client.get("/readyz").status_code == 503


def test_metrics_exposition(client):
    client.post("/events", json={"eventName": "view", "userId": "u1"})
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "events_accepted_total" in resp.text
    assert "http_requests_total" in resp.text
