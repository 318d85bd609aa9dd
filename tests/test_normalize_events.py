from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from api.errors import PayloadTooLarge, ValidationError
from api.normalize.events import (
    EventRecord,
    canonical_json,
    compute_event_hash,
    normalize_batch,
    normalize_event,
)


def test_hash_ignores_metadata_key_order():
    a = normalize_event(
        {"userId": "u1", "eventName": "view", "timestamp": "2024-01-01T10:00:00Z",
         "metadata": {"a": 1, "b": {"x": [1, 2], "y": None}}}
    )
    b = normalize_event(
        {"eventName": "view", "timestamp": "2024-01-01T10:00:00Z", "userId": "u1",
         "metadata": {"b": {"y": None, "x": [1, 2]}, "a": 1}}
    )
    assert a.event_hash == b.event_hash
    assert len(a.event_hash) == 64


def test_hash_changes_with_any_identity_field():
    base = dict(org_id="o", project_id="p", event_id=None, event_name="view",
                user_id="u1", timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
                metadata={"k": "v"})
    h = compute_event_hash(**base)
    assert h != compute_event_hash(**{**base, "org_id": "o2"})
    assert h != compute_event_hash(**{**base, "user_id": "u2"})
    assert h != compute_event_hash(**{**base, "metadata": {"k": "w"}})
    assert h != compute_event_hash(**{**base, "timestamp": None})


def test_event_id_suppresses_hash():
    r = normalize_event({"userId": "u1", "eventName": "view", "eventId": "e-1"})
    assert r.event_id == "e-1"
    assert r.event_hash is None


def test_blank_scope_and_event_id_are_absent():
    r = normalize_event({"userId": "u1", "eventName": "view", "orgId": "", "projectId": "", "eventId": ""})
    assert r.org_id is None and r.project_id is None and r.event_id is None
    assert r.event_hash is not None


def test_retry_without_timestamp_hashes_identically():
    payload = {"userId": "u1", "eventName": "signup", "metadata": {"plan": "pro"}}
    with freeze_time("2024-03-01 12:00:00"):
        first = normalize_event(payload)
    with freeze_time("2024-03-01 12:00:07"):
        retry = normalize_event(payload)
    assert first.event_hash == retry.event_hash
    assert first.timestamp != retry.timestamp


@freeze_time("2024-03-01 12:00:00")
def test_defaults_timestamp_and_created_at_to_now():
    r = normalize_event({"userId": "u1", "eventName": "view"})
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert r.timestamp == now
    assert r.created_at == now
    assert r.metadata == {}


def test_timestamps_normalized_to_utc():
    naive = normalize_event({"userId": "u", "eventName": "e", "timestamp": "2024-01-01T10:00:00"})
    offset = normalize_event({"userId": "u", "eventName": "e", "timestamp": "2024-01-01T12:00:00+02:00"})
    assert naive.timestamp == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert offset.timestamp == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert offset.timestamp.tzinfo == timezone.utc


@pytest.mark.parametrize(
    "payload",
    [
        {"eventName": "view"},
        {"userId": "u1"},
        {"userId": "", "eventName": "view"},
        {"userId": "u1", "eventName": ""},
        {"userId": "u1", "eventName": "view", "metadata": [1, 2]},
        {"userId": "u1", "eventName": "view", "metadata": {"x": float("nan")}},
        {"userId": "u1", "eventName": "view", "metadata": {"x": object()}},
        {"userId": "u1", "eventName": "view", "timestamp": "yesterday-ish"},
        {"userId": "u1", "eventName": "view", "metadata": {"k": "\ud800"}},
        {"userId": "u1", "eventName": "view", "metadata": {"\udfff": 1}},
        {"userId": "u1", "eventName": "view", "metadata": {"a": ["ok", {"b": "\ud800"}]}},
        {"userId": "u1", "eventName": "view\ud800"},
        {"userId": "\ud800", "eventName": "view"},
        {"userId": "u1", "eventName": "view", "eventId": "\ud800"},
    ],
)
def test_invalid_events_rejected(payload):
    with pytest.raises(ValidationError):
        normalize_event(payload)


def test_non_object_event_rejected():
    with pytest.raises(ValidationError):
        normalize_event(["not", "an", "event"])


def test_unknown_fields_ignored():
    r = normalize_event({"userId": "u1", "eventName": "view", "sessionColor": "blue"})
    assert r.event_name == "view"


def test_batch_limits():
    with pytest.raises(ValidationError):
        normalize_batch([])
    with pytest.raises(ValidationError):
        normalize_batch({"userId": "u1", "eventName": "view"})
    too_many = [{"userId": "u", "eventName": "e"}] * 11
    with pytest.raises(PayloadTooLarge):
        normalize_batch(too_many, max_batch=10)
    assert len(normalize_batch(too_many[:10], max_batch=10)) == 10


def test_batch_error_names_the_offending_item():
    with pytest.raises(ValidationError) as exc:
        normalize_batch([{"userId": "u", "eventName": "e"}, {"userId": "u"}])
    assert "[1]" in str(exc.value)


def test_batch_shares_ingestion_time():
    records = normalize_batch([{"userId": "u", "eventName": "a"}, {"userId": "u", "eventName": "b"}])
    assert records[0].created_at == records[1].created_at


def test_record_dict_roundtrip_keeps_identity():
    r = normalize_event(
        {"orgId": "acme", "userId": "u1", "eventName": "view",
         "timestamp": "2024-01-01T10:00:00.123456Z", "metadata": {"n": 1.5}}
    )
    data = r.to_dict()
    assert data["timestamp"] == "2024-01-01T10:00:00.123456Z"
    assert EventRecord.from_dict(data) == r


def test_from_dict_requires_identity():
    with pytest.raises(ValidationError):
        EventRecord.from_dict({"userId": "u", "eventName": "e", "timestamp": "2024-01-01T00:00:00Z"})


def test_canonical_json_is_compact_and_sorted():
    assert canonical_json({"b": 1, "a": [True, None]}) == '{"a":[true,null],"b":1}'
    assert canonical_json({"é": "ü"}) == '{"é":"ü"}'
