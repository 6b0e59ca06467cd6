"""
Retention job for an external scheduler, e.g. cron:

    */30 * * * *  cd /srv/throttle && python cleanup.py
"""

import logging
import sys

from config import settings
from db import SessionLocal, init_db
from errors import PersistenceFailure
from event_store import EventStore
from rate_limit import RateCounter
from redis_client import redis_client
from retention import RetentionManager
from state_store import DatabaseStateStore

logger = logging.getLogger("throttle.worker.cleanup")


def run() -> int:
    init_db()
    store = EventStore(SessionLocal)
    manager = RetentionManager(
        store,
        counter=RateCounter(redis_client, store, ttl_seconds=settings.COUNT_CACHE_TTL_SECONDS),
        state_store=DatabaseStateStore(SessionLocal),
        guard_hours=settings.CLEANUP_GUARD_HOURS,
    )
    result = manager.run_job(settings.snapshot())
    if not result.ran:
        logger.info("Cleanup not due (disabled or inside guard interval)")
    return result.deleted


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    try:
        deleted = run()
    except PersistenceFailure as e:
        logger.error(f"Cleanup failed: {e}")
        sys.exit(1)
    print(deleted)
