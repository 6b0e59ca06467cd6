"""
Durable log of classified requests.

Source of truth for rolling counts (behind the Redis cache in
rate_limit.py), for retention, and for the traffic statistics.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from errors import InvalidInput, PersistenceFailure
from models import EventStatus, RequestEvent
from validation import coerce_count, is_valid_ip, sanitize_user_agent

logger = logging.getLogger("throttle.worker.events")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventStore:

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    # ======================================================
    # Writes
    # ======================================================

    def append(
        self,
        ip: str,
        user_agent: Optional[str],
        status=EventStatus.ALLOWED,
        count: int = 1,
    ) -> RequestEvent:
        """
        Persist one event, stamped with the current UTC time.

        Bad status/count/user-agent values are coerced; an invalid IP
        raises InvalidInput and a database fault raises PersistenceFailure.
        """
        if not is_valid_ip(ip):
            raise InvalidInput(f"Invalid IP address: {ip!r}")

        event = RequestEvent(
            ip=ip.strip(),
            user_agent=sanitize_user_agent(user_agent),
            occurred_at=self._clock(),
            count=coerce_count(count),
            status=EventStatus.coerce(status).value,
        )

        try:
            with self._session_factory() as session:
                session.add(event)
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Event insert failed: {e}") from e

        return event

    def delete_older_than(self, cutoff: datetime) -> int:
        """
        Bulk delete every event strictly older than cutoff.
        Returns the number of rows removed.
        """
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(RequestEvent).where(RequestEvent.occurred_at < cutoff)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Cleanup query failed: {e}") from e

        return max(result.rowcount or 0, 0)

    # ======================================================
    # Reads
    # ======================================================

    def count_since(self, ip: str, minutes: int) -> int:
        """
        Sum of `count` for ip over [now - minutes, now].
        """
        if not is_valid_ip(ip):
            return 0

        minutes = max(1, int(minutes))
        cutoff = self._clock() - timedelta(minutes=minutes)

        try:
            with self._session_factory() as session:
                total = session.scalar(
                    select(func.coalesce(func.sum(RequestEvent.count), 0)).where(
                        RequestEvent.ip == ip.strip(),
                        RequestEvent.occurred_at >= cutoff,
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Count query failed: {e}") from e

        return max(int(total or 0), 0)

    def statistics(self, top: int = 5, hours: int = 24) -> Dict:
        """
        Aggregate traffic figures for operators.
        """
        now = self._clock()
        since = now - timedelta(hours=hours)

        try:
            with self._session_factory() as session:
                total = self._count(session)
                blocked = self._count(session, RequestEvent.status == EventStatus.BLOCKED.value)
                recent = self._count(session, RequestEvent.occurred_at >= since)
                good_bots = self._count(session, RequestEvent.status == EventStatus.GOOD_BOT.value)
                bad_bots = self._count(session, RequestEvent.status == EventStatus.BAD_BOT.value)

                unique_ips = session.scalar(
                    select(func.count(distinct(RequestEvent.ip)))
                ) or 0
                unique_blocked_ips = session.scalar(
                    select(func.count(distinct(RequestEvent.ip))).where(
                        RequestEvent.status == EventStatus.BLOCKED.value
                    )
                ) or 0

                top_ips = self._top(session, RequestEvent.ip, top)
                top_agents = self._top(session, RequestEvent.user_agent, top)

                recent_rows = session.execute(
                    select(RequestEvent.occurred_at, RequestEvent.status).where(
                        RequestEvent.occurred_at >= since
                    )
                ).all()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Statistics query failed: {e}") from e

        return {
            "total_requests": total,
            "blocked_requests": blocked,
            "last_24h_requests": recent,
            "unique_ips": unique_ips,
            "unique_blocked_ips": unique_blocked_ips,
            "good_bot_count": good_bots,
            "bad_bot_count": bad_bots,
            "avg_requests_per_ip": round(total / unique_ips, 2) if unique_ips else 0,
            "blocked_percent": round(blocked / total * 100, 2) if total else 0,
            "top_ips": [{"ip": value, "count": cnt} for value, cnt in top_ips],
            "top_user_agents": [
                {"user_agent": value, "count": cnt} for value, cnt in top_agents
            ],
            "hourly_activity": _bucket_by_hour(recent_rows),
        }

    # ======================================================
    # Helpers
    # ======================================================

    @staticmethod
    def _count(session, *criteria) -> int:
        query = select(func.count(RequestEvent.id))
        if criteria:
            query = query.where(*criteria)
        return session.scalar(query) or 0

    @staticmethod
    def _top(session, column, limit: int) -> List:
        cnt = func.count(RequestEvent.id).label("cnt")
        return session.execute(
            select(column, cnt)
            .where(column.is_not(None), column != "")
            .group_by(column)
            .order_by(cnt.desc(), column)
            .limit(limit)
        ).all()


def _bucket_by_hour(rows) -> List[Dict]:
    # Grouped in Python so the query stays portable across SQLite/PostgreSQL.
    buckets: "OrderedDict[datetime, Dict]" = OrderedDict()
    for occurred_at, status in sorted(rows, key=lambda r: r[0]):
        hour = occurred_at.replace(minute=0, second=0, microsecond=0)
        bucket = buckets.setdefault(
            hour, {"hour": hour, "total_count": 0, "blocked_count": 0}
        )
        bucket["total_count"] += 1
        if status == EventStatus.BLOCKED.value:
            bucket["blocked_count"] += 1
    return list(buckets.values())
