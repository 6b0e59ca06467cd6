"""
Explicit component composition, resolved once at startup.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import httpx
import redis

from config import Settings
from config_manager import ConfigManager
from db import SessionLocal, init_db
from decision import Classifier
from emailer import SmtpMailer
from event_store import EventStore
from notifier import Notifier
from rate_limit import RateCounter
from redis_client import redis_client
from retention import RetentionManager
from state_store import DatabaseStateStore, StateStore


@dataclass
class Worker:
    config_manager: ConfigManager
    event_store: EventStore
    counter: RateCounter
    classifier: Classifier
    retention: RetentionManager
    state_store: StateStore
    redis: redis.Redis
    upstream_url: str
    http_client: Optional[httpx.AsyncClient] = None
    executor: Optional[ThreadPoolExecutor] = None


def build_worker(settings: Settings, session_factory=None, redis_conn=None) -> Worker:
    session_factory = session_factory or SessionLocal
    redis_conn = redis_conn if redis_conn is not None else redis_client

    if session_factory is SessionLocal:
        init_db()

    event_store = EventStore(session_factory)
    counter = RateCounter(redis_conn, event_store, ttl_seconds=settings.COUNT_CACHE_TTL_SECONDS)
    state_store = DatabaseStateStore(session_factory)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="throttle-mail")
    notifier = Notifier(
        SmtpMailer.from_settings(settings),
        state_store,
        cooldown_seconds=settings.NOTIFICATION_COOLDOWN_SECONDS,
        executor=executor,
    )

    return Worker(
        config_manager=ConfigManager(
            settings.snapshot(),
            control_base_url=settings.CONTROL_API_BASE_URL,
            shared_secret=settings.CONTROL_WORKER_SHARED_SECRET,
        ),
        event_store=event_store,
        counter=counter,
        classifier=Classifier(event_store, counter, notifier),
        retention=RetentionManager(
            event_store,
            counter=counter,
            state_store=state_store,
            guard_hours=settings.CLEANUP_GUARD_HOURS,
        ),
        state_store=state_store,
        redis=redis_conn,
        upstream_url=settings.UPSTREAM_URL,
        http_client=httpx.AsyncClient(timeout=30.0),
        executor=executor,
    )


async def close_worker(worker: Worker) -> None:
    await worker.config_manager.stop()
    if worker.http_client is not None:
        await worker.http_client.aclose()
    if worker.executor is not None:
        worker.executor.shutdown(wait=False)
