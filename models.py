import enum

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from db import Base


class EventStatus(str, enum.Enum):
    GOOD_BOT = "good_bot"
    BAD_BOT = "bad_bot"
    WHITELISTED = "whitelisted"
    BLOCKED = "blocked"
    ALLOWED = "allowed"

    @classmethod
    def coerce(cls, value) -> "EventStatus":
        """
        Map any input onto the closed status set.
        Legacy "human" rows and unknown values become ALLOWED.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ALLOWED


class RequestEvent(Base):
    """
    One classified request. Append-only; removed by retention.
    """
    __tablename__ = "request_events"

    id = Column(Integer, primary_key=True)
    ip = Column(String(45), nullable=False)
    user_agent = Column(String(500), nullable=False, default="unknown")
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    count = Column(Integer, nullable=False, default=1)
    status = Column(String(16), nullable=False, default=EventStatus.ALLOWED.value)

    __table_args__ = (
        # per-IP rolling counts
        Index("ix_request_events_ip_time", "ip", "occurred_at"),
        # retention deletes
        Index("ix_request_events_time", "occurred_at"),
        # per-status statistics
        Index("ix_request_events_status_time", "status", "occurred_at"),
    )


class WorkerState(Base):
    """
    Small durable timestamps (notification cooldown, cleanup guard).
    """
    __tablename__ = "worker_state"

    key = Column(String(64), primary_key=True)
    value = Column(DateTime(timezone=True), nullable=False)
