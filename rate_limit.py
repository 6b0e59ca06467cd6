import hashlib
import logging
from typing import Iterable

import redis

from event_store import EventStore

logger = logging.getLogger("throttle.worker.counter")


# =========================
# Cache layout
# =========================

KEY_PREFIX = "throttle:count"

# Windows evicted after every append for an IP.
COMMON_WINDOWS = (1, 5, 10, 15, 30, 60)

DEFAULT_TTL_SECONDS = 60


# =========================
# Helpers
# =========================

def count_key(ip: str, minutes: int) -> str:
    digest = hashlib.md5(ip.encode()).hexdigest()
    return f"{KEY_PREFIX}:{digest}:{minutes}"


def _window(minutes: int) -> int:
    return max(1, int(minutes))


# =========================
# Rolling Counter
# =========================

class RateCounter:
    """
    Short-TTL Redis cache in front of EventStore.count_since.

    Counts are approximate: an entry may lag the event log by up to its
    TTL. Redis faults degrade to a direct event-log query.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        event_store: EventStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.redis = redis_client
        self.store = event_store
        self.ttl_seconds = ttl_seconds

    def ttl_for(self, minutes: int) -> int:
        # Strictly shorter than the window so entries converge on the true count.
        return max(1, min(self.ttl_seconds, _window(minutes) * 60 - 1))

    def get_count(self, ip: str, minutes: int = 1) -> int:
        minutes = _window(minutes)
        key = count_key(ip, minutes)

        try:
            cached = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Counter cache read failed, querying event log: {e}")
            return self.store.count_since(ip, minutes)

        if cached is not None:
            try:
                return max(int(cached), 0)
            except (TypeError, ValueError):
                logger.warning(f"Discarding unreadable cached count for {key}: {cached!r}")
                self._discard(key)

        count = self.store.count_since(ip, minutes)

        try:
            self.redis.set(key, count, ex=self.ttl_for(minutes))
        except redis.RedisError as e:
            logger.warning(f"Counter cache write failed: {e}")

        return count

    def increment(self, ip: str, minutes: int = 1) -> int:
        """
        Atomic increment-and-read for the limit decision.

        A cold key is seeded from the event log with SET NX, then INCR
        makes the returned value include the current request. Concurrent
        callers therefore see distinct counts.
        """
        minutes = _window(minutes)
        key = count_key(ip, minutes)
        ttl = self.ttl_for(minutes)

        try:
            if self.redis.get(key) is None:
                seed = self.store.count_since(ip, minutes)
                self.redis.set(key, seed, ex=ttl, nx=True)

            count = self.redis.incr(key)

            # Key expired between seed and INCR: give it a TTL again.
            if count == 1:
                self.redis.expire(key, ttl)

            return count
        except redis.RedisError as e:
            logger.warning(f"Atomic counter unavailable, querying event log: {e}")
            return self.store.count_since(ip, minutes) + 1

    def _discard(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Counter cache delete failed: {e}")

    def invalidate(self, ip: str, keep: Iterable[int] = ()) -> None:
        """
        Evict cached counts for the common windows after an append.
        """
        keep = set(keep)
        keys = [count_key(ip, m) for m in COMMON_WINDOWS if m not in keep]
        if not keys:
            return
        try:
            self.redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Counter invalidation failed for {ip}: {e}")

    def flush(self) -> int:
        """
        Drop every cached count (after a retention delete).
        """
        removed = 0
        try:
            batch = []
            for key in self.redis.scan_iter(match=f"{KEY_PREFIX}:*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self.redis.delete(*batch)
                    batch = []
            if batch:
                removed += self.redis.delete(*batch)
        except redis.RedisError as e:
            logger.warning(f"Counter flush failed: {e}")
        return removed
