"""Tests for the cached rolling counter."""

from unittest.mock import MagicMock

import pytest

from errors import PersistenceFailure
from rate_limit import COMMON_WINDOWS, RateCounter, count_key


class TestGetCount:
    def test_cold_cache_reads_event_log(self, counter, event_store):
        for _ in range(4):
            event_store.append("1.2.3.4", "ua")
        assert counter.get_count("1.2.3.4", 1) == 4

    def test_warm_cache_skips_event_log(self, fake_redis):
        store = MagicMock()
        store.count_since.return_value = 7
        counter = RateCounter(fake_redis, store)

        assert counter.get_count("1.2.3.4", 1) == 7
        assert counter.get_count("1.2.3.4", 1) == 7
        store.count_since.assert_called_once_with("1.2.3.4", 1)

    def test_monotonic_n_events_then_cached(self, event_store, fake_redis):
        store = MagicMock(wraps=event_store)
        counter = RateCounter(fake_redis, store)
        for _ in range(6):
            event_store.append("1.2.3.4", "ua")

        assert counter.get_count("1.2.3.4", 1) == 6
        assert counter.get_count("1.2.3.4", 1) == 6
        assert store.count_since.call_count == 1

    def test_cache_is_stale_until_invalidated(self, counter, event_store):
        event_store.append("1.2.3.4", "ua")
        assert counter.get_count("1.2.3.4", 1) == 1

        event_store.append("1.2.3.4", "ua")
        assert counter.get_count("1.2.3.4", 1) == 1

        counter.invalidate("1.2.3.4")
        assert counter.get_count("1.2.3.4", 1) == 2

    def test_ttl_shorter_than_window(self, counter, fake_redis):
        counter.get_count("1.2.3.4", 1)
        counter.get_count("1.2.3.4", 5)
        assert fake_redis.ttls[count_key("1.2.3.4", 1)] == 59
        assert fake_redis.ttls[count_key("1.2.3.4", 5)] == 60

    def test_window_clamped_to_one_minute(self, counter, fake_redis):
        counter.get_count("1.2.3.4", 0)
        assert count_key("1.2.3.4", 1) in fake_redis.data

    def test_redis_down_falls_back_to_event_log(self, counter, event_store, fake_redis):
        event_store.append("1.2.3.4", "ua")
        fake_redis.fail = True
        assert counter.get_count("1.2.3.4", 1) == 1

    def test_unreadable_cached_value_is_a_miss(self, counter, event_store, fake_redis):
        for _ in range(2):
            event_store.append("1.2.3.4", "ua")
        fake_redis.data[count_key("1.2.3.4", 1)] = "not-a-number"

        assert counter.get_count("1.2.3.4", 1) == 2
        assert fake_redis.data[count_key("1.2.3.4", 1)] == "2"

    def test_event_log_fault_propagates(self, fake_redis):
        store = MagicMock()
        store.count_since.side_effect = PersistenceFailure("db down")
        with pytest.raises(PersistenceFailure):
            RateCounter(fake_redis, store).get_count("1.2.3.4", 1)


class TestInvalidate:
    def test_evicts_common_windows(self, counter, fake_redis):
        for minutes in COMMON_WINDOWS:
            counter.get_count("1.2.3.4", minutes)
        counter.get_count("5.6.7.8", 1)

        counter.invalidate("1.2.3.4")

        assert not any(count_key("1.2.3.4", m) in fake_redis.data for m in COMMON_WINDOWS)
        assert count_key("5.6.7.8", 1) in fake_redis.data

    def test_keep_spares_a_window(self, counter, fake_redis):
        counter.get_count("1.2.3.4", 1)
        counter.get_count("1.2.3.4", 5)
        counter.invalidate("1.2.3.4", keep=(1,))
        assert count_key("1.2.3.4", 1) in fake_redis.data
        assert count_key("1.2.3.4", 5) not in fake_redis.data

    def test_redis_failure_is_swallowed(self, counter, fake_redis):
        fake_redis.fail = True
        counter.invalidate("1.2.3.4")


class TestIncrement:
    def test_seeds_from_event_log_then_increments(self, counter, event_store):
        for _ in range(3):
            event_store.append("1.2.3.4", "ua")
        assert counter.increment("1.2.3.4") == 4
        assert counter.increment("1.2.3.4") == 5

    def test_successive_callers_see_distinct_counts(self, counter):
        seen = [counter.increment("1.2.3.4") for _ in range(5)]
        assert seen == [1, 2, 3, 4, 5]

    def test_seeded_key_has_ttl(self, counter, fake_redis):
        counter.increment("1.2.3.4")
        assert fake_redis.ttls[count_key("1.2.3.4", 1)] == 59

    def test_redis_down_counts_from_event_log(self, counter, event_store, fake_redis):
        event_store.append("1.2.3.4", "ua")
        fake_redis.fail = True
        assert counter.increment("1.2.3.4") == 2


def test_flush_removes_only_counter_keys(counter, fake_redis):
    counter.get_count("1.2.3.4", 1)
    counter.get_count("5.6.7.8", 5)
    fake_redis.set("throttle:state:last_notification", "1")

    assert counter.flush() == 2
    assert list(fake_redis.data) == ["throttle:state:last_notification"]
