import fnmatch
from datetime import datetime, timedelta, timezone

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables
from db import Base, make_session_factory
from event_store import EventStore
from rate_limit import RateCounter
from schemas import ThrottleConfig


# ======================================================
# Test doubles
# ======================================================

class FrozenClock:
    """
    Callable clock that only moves when told to.
    """

    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryRedis:
    """
    The handful of redis.Redis commands the worker uses.
    Expiry is recorded, not enforced.
    """

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.calls = []
        self.fail = False

    def _check(self, name):
        self.calls.append(name)
        if self.fail:
            raise redis.ConnectionError("redis down")

    def get(self, key):
        self._check("get")
        return self.data.get(key)

    def set(self, key, value, ex=None, nx=False):
        self._check("set")
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    def incr(self, key):
        self._check("incr")
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    def expire(self, key, seconds):
        self._check("expire")
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def delete(self, *keys):
        self._check("delete")
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def scan_iter(self, match="*", count=None):
        self._check("scan_iter")
        return iter([k for k in list(self.data) if fnmatch.fnmatch(k, match)])

    def ping(self):
        self._check("ping")
        return True


# ======================================================
# Fixtures
# ======================================================

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def event_store(session_factory, clock):
    return EventStore(session_factory, clock=clock)


@pytest.fixture
def counter(fake_redis, event_store):
    return RateCounter(fake_redis, event_store, ttl_seconds=60)


@pytest.fixture
def make_config():
    def _make(**overrides):
        values = {
            "limit_per_minute": 5,
            "block_minutes": 30,
            "retention_days": 7,
            "atomic_counting": False,
        }
        values.update(overrides)
        return ThrottleConfig(**values)

    return _make
