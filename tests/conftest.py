"""Shared fakes: SQLite-backed store, in-memory Redis, recording Celery producer"""
import fnmatch
import itertools
from datetime import datetime, timezone

import pytest

from api.cache import AnalyticsCache
from api.database import build_engine
from api.normalize.events import normalize_event
from api.queue import EventQueue
from api.store import EventStore


class FakeRedis:
    """Just enough of redis.Redis for AnalyticsCache"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.scan_patterns = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def delete(self, *keys):
        self._check()
        n = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                n += 1
            self.ttls.pop(k, None)
        return n

    def scan_iter(self, match="*", count=None):
        self._check()
        self.scan_patterns.append(match)
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def keys(self, pattern="*"):
        raise AssertionError("KEYS must not be used")


class FakeResult:
    def __init__(self, task_id):
        self.id = task_id


class FakeProducer:
    """Records send_task calls instead of talking to a broker"""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self._ids = itertools.count(1)

    def send_task(self, name, args=None, kwargs=None, **options):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.sent.append({"name": name, "args": args, "kwargs": kwargs, "options": options})
        return FakeResult(f"job-{next(self._ids)}")

    @property
    def messages(self):
        return [call["args"][0] for call in self.sent]


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'events.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    s = EventStore(engine)
    s.create_schema()
    return s


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    c = AnalyticsCache(client=fake_redis, default_ttl=300)
    yield c
    c.close()


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def queue(producer):
    return EventQueue(producer=producer, queue_name="events")


def ts(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_record(user, name, when, **extra):
    payload = {"userId": user, "eventName": name, "timestamp": when.isoformat()}
    payload.update(extra)
    return normalize_event(payload)


@pytest.fixture
def seed(store):
    """Insert events directly through the store; returns the records."""

    def _seed(*events, **scope):
        records = [make_record(user, name, when, **scope) for user, name, when in events]
        for r in records:
            store.insert_if_absent(r)
        return records

    return _seed
