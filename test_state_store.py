"""Tests for the durable timestamp stores."""

from datetime import timedelta

import pytest

from errors import PersistenceFailure
from state_store import DatabaseStateStore, RedisStateStore


@pytest.fixture(params=["database", "redis"])
def store(request, session_factory, fake_redis):
    if request.param == "database":
        return DatabaseStateStore(session_factory)
    return RedisStateStore(fake_redis)


def test_missing_key(store):
    assert store.get("last_notification") is None


def test_round_trip_and_overwrite(store, clock):
    store.set("last_notification", clock.now)
    assert store.get("last_notification") == clock.now

    later = clock.now + timedelta(minutes=5)
    store.set("last_notification", later)
    assert store.get("last_notification") == later


def test_keys_are_independent(store, clock):
    store.set("last_notification", clock.now)
    assert store.get("last_cleanup_check") is None


def test_redis_garbage_value_ignored(fake_redis):
    fake_redis.set("throttle:state:last_notification", "not-a-number")
    assert RedisStateStore(fake_redis).get("last_notification") is None


def test_redis_outage_raises_persistence_failure(fake_redis, clock):
    fake_redis.fail = True
    store = RedisStateStore(fake_redis)
    with pytest.raises(PersistenceFailure):
        store.get("last_notification")
    with pytest.raises(PersistenceFailure):
        store.set("last_notification", clock.now)
