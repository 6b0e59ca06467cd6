import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from errors import PersistenceFailure
from models import WorkerState

logger = logging.getLogger("throttle.worker.state")

LAST_NOTIFICATION = "last_notification"
LAST_CLEANUP_CHECK = "last_cleanup_check"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StateStore(Protocol):
    def get(self, key: str) -> Optional[datetime]:
        ...

    def set(self, key: str, value: datetime) -> None:
        ...


class DatabaseStateStore:
    """
    Durable timestamps in the worker_state table; survives restarts.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, key: str) -> Optional[datetime]:
        try:
            with self._session_factory() as session:
                row = session.get(WorkerState, key)
                return _as_utc(row.value) if row else None
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"State read failed for {key}: {e}") from e

    def set(self, key: str, value: datetime) -> None:
        try:
            with self._session_factory() as session:
                session.merge(WorkerState(key=key, value=_as_utc(value)))
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"State write failed for {key}: {e}") from e


class RedisStateStore:
    """
    Timestamps as epoch seconds under non-expiring Redis keys.
    Durable only as far as the Redis deployment persists data.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "throttle:state"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[datetime]:
        try:
            raw = self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise PersistenceFailure(f"State read failed for {key}: {e}") from e
        if raw is None:
            return None
        try:
            return datetime.fromtimestamp(float(raw), tz=timezone.utc)
        except (TypeError, ValueError):
            logger.warning(f"Discarding unreadable state value for {key}: {raw!r}")
            return None

    def set(self, key: str, value: datetime) -> None:
        try:
            self.redis.set(self._key(key), _as_utc(value).timestamp())
        except redis.RedisError as e:
            raise PersistenceFailure(f"State write failed for {key}: {e}") from e
