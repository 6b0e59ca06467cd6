from datetime import datetime
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ThrottleConfig(BaseModel):
    """
    Configuration snapshot for one evaluation.
    Validated upstream; never mutated once built.
    """
    model_config = ConfigDict(frozen=True)

    limit_per_minute: int = Field(default=30, gt=0)
    block_minutes: int = Field(default=30, gt=0)
    retention_days: int = Field(default=7, ge=0)
    whitelist: FrozenSet[str] = frozenset()
    allowed_bots: Tuple[str, ...] = ()
    blocked_bots: Tuple[str, ...] = ()
    notifications_enabled: bool = False
    notification_recipients: Tuple[str, ...] = ()
    log_to_file: bool = False
    atomic_counting: bool = True


class HealthResponse(BaseModel):
    status: str


class CleanupResponse(BaseModel):
    ran: bool
    deleted: int
    last_check: Optional[datetime]


class IpCount(BaseModel):
    ip: str
    count: int


class UserAgentCount(BaseModel):
    user_agent: str
    count: int


class HourlyActivity(BaseModel):
    hour: datetime
    total_count: int
    blocked_count: int


class StatsResponse(BaseModel):
    total_requests: int
    blocked_requests: int
    last_24h_requests: int
    unique_ips: int
    unique_blocked_ips: int
    good_bot_count: int
    bad_bot_count: int
    avg_requests_per_ip: float
    blocked_percent: float
    top_ips: List[IpCount]
    top_user_agents: List[UserAgentCount]
    hourly_activity: List[HourlyActivity]
