import json

from api.cache import AnalyticsCache
from api.core.cache_keys import ANY_SCOPE, fingerprint, scope_patterns
from api.core.metrics import analytics_cache_total


def test_fingerprint_ignores_param_order():
    a = fingerprint("funnel", {"steps": ["a", "b"], "start": "s", "end": "e"}, "acme", "web")
    b = fingerprint("funnel", {"end": "e", "start": "s", "steps": ["a", "b"]}, "acme", "web")
    assert a == b
    assert a.startswith("analytics:funnel:org:acme:project:web:")


def test_fingerprint_distinguishes_queries():
    base = fingerprint("metrics", {"event": "view", "interval": "daily"}, "acme")
    assert base != fingerprint("metrics", {"event": "view", "interval": "hourly"}, "acme")
    assert base != fingerprint("metrics", {"event": "view", "interval": "daily"}, "acme", "web")
    assert base != fingerprint("retention", {"event": "view", "interval": "daily"}, "acme")
    # step order is part of the query
    assert fingerprint("funnel", {"steps": ["a", "b"]}) != fingerprint("funnel", {"steps": ["b", "a"]})


def test_unfiltered_scope_uses_marker():
    key = fingerprint("metrics", {"event": "view"})
    assert f":org:{ANY_SCOPE}:project:{ANY_SCOPE}:" in key


def test_scope_values_are_quoted():
    key = fingerprint("metrics", {}, "a:b*", "!all")
    assert ":org:a%3Ab%2A:project:%21all:" in key


def test_scope_patterns_cover_unfiltered_variants():
    assert scope_patterns("acme", "web") == [
        "analytics:*:org:acme:project:web:*",
        "analytics:*:org:acme:project:!all:*",
        "analytics:*:org:!all:project:web:*",
        "analytics:*:org:!all:project:!all:*",
    ]
    assert scope_patterns(None, None) == ["analytics:*:org:!all:project:!all:*"]


def test_set_get_roundtrip_with_ttl(cache, fake_redis):
    key = fingerprint("metrics", {"event": "view"}, "acme")
    assert cache.get(key) is None
    assert cache.set(key, {"data": [{"period": "2024-01-01", "count": 3}]}, ttl=300)
    assert cache.get(key) == {"data": [{"period": "2024-01-01", "count": 3}]}
    assert fake_redis.ttls[key] == 300
    assert json.loads(fake_redis.data[key])["data"][0]["count"] == 3


def test_invalidate_scope_deletes_matching_and_unfiltered_keys(cache, fake_redis):
    mine = fingerprint("metrics", {"event": "view"}, "acme", "web")
    org_wide = fingerprint("metrics", {"event": "view"}, "acme")
    global_ = fingerprint("funnel", {"steps": ["a"]})
    other = fingerprint("metrics", {"event": "view"}, "globex", "web")
    for k in (mine, org_wide, global_, other):
        cache.set(k, {"x": 1})

    deleted = cache.invalidate_scope("acme", "web")

    assert deleted == 3
    assert set(fake_redis.data) == {other}
    assert all(p.startswith("analytics:") for p in fake_redis.scan_patterns)


def test_invalidate_scopes_async_completes(cache, fake_redis):
    key = fingerprint("journey", {"userId": "u1"}, "acme")
    cache.set(key, {"events": []})
    future = cache.invalidate_scopes_async([("acme", None), ("acme", None)])
    assert future.result(timeout=5) == 1
    assert key not in fake_redis.data


def test_redis_failures_degrade_to_miss(cache, fake_redis):
    key = fingerprint("metrics", {"event": "view"})
    cache.set(key, {"x": 1})
    fake_redis.fail = True
    errors_before = analytics_cache_total.get({"op": "get", "result": "error"})

    assert cache.get(key) is None
    assert cache.set(key, {"x": 2}) is False
    assert cache.invalidate_scope(None, None) == 0
    assert analytics_cache_total.get({"op": "get", "result": "error"}) == errors_before + 1


def test_corrupt_entry_is_a_miss(cache, fake_redis):
    fake_redis.data["analytics:metrics:org:!all:project:!all:abc"] = "{not json"
    assert cache.get("analytics:metrics:org:!all:project:!all:abc") is None


def test_disabled_cache_is_inert(fake_redis):
    c = AnalyticsCache(client=fake_redis, enabled=False)
    try:
        assert c.set("k", {"x": 1}) is False
        assert c.get("k") is None
        assert c.invalidate_scopes_async([("a", "b")]) is None
        assert fake_redis.data == {}
    finally:
        c.close()
