import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from event_store import EventStore
from rate_limit import RateCounter
from schemas import ThrottleConfig
from state_store import LAST_CLEANUP_CHECK, StateStore

logger = logging.getLogger("throttle.worker.retention")

DEFAULT_GUARD_HOURS = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CleanupResult:
    ran: bool
    deleted: int
    last_check: Optional[datetime]


class RetentionManager:
    """
    Deletes events past the retention horizon.

    The guard interval keeps an externally scheduled job from issuing
    a bulk delete on every tick, and from several processes sharing
    the trigger deleting concurrently.
    """

    def __init__(
        self,
        event_store: EventStore,
        counter: Optional[RateCounter] = None,
        state_store: Optional[StateStore] = None,
        guard_hours: int = DEFAULT_GUARD_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = event_store
        self.counter = counter
        self.state = state_store
        self.guard = timedelta(hours=guard_hours)
        self._clock = clock

    def run_cleanup(
        self,
        retention_days: int,
        last_check: Optional[datetime],
    ) -> CleanupResult:
        if retention_days <= 0:
            return CleanupResult(ran=False, deleted=0, last_check=last_check)

        now = self._clock()
        if last_check is not None and last_check.tzinfo is None:
            last_check = last_check.replace(tzinfo=timezone.utc)
        if last_check is not None and now - last_check < self.guard:
            logger.debug("Cleanup skipped: guard interval has not elapsed")
            return CleanupResult(ran=False, deleted=0, last_check=last_check)

        cutoff = now - timedelta(days=retention_days)
        deleted = self.store.delete_older_than(cutoff)

        if deleted and self.counter is not None:
            self.counter.flush()

        logger.info(f"Cleaned up {deleted} event(s) older than {cutoff.isoformat()}")
        return CleanupResult(ran=True, deleted=deleted, last_check=now)

    def run_job(self, config: ThrottleConfig) -> CleanupResult:
        """
        Scheduler entry point: guard timestamp lives in the state store.
        """
        if self.state is None:
            raise RuntimeError("run_job needs a state store for the guard timestamp")

        result = self.run_cleanup(config.retention_days, self.state.get(LAST_CLEANUP_CHECK))
        if result.ran:
            self.state.set(LAST_CLEANUP_CHECK, result.last_check)
        return result
