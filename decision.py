import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Sequence

from errors import IdentityUnresolvable, ThrottleError
from event_store import EventStore
from identity import require_client_ip
from models import EventStatus
from notifier import Notifier
from rate_limit import RateCounter
from schemas import ThrottleConfig
from traffic_logger import emit_traffic_event
from validation import sanitize_user_agent

logger = logging.getLogger("throttle.worker.decision")


class Verdict(str, Enum):
    GOOD_BOT = "GOOD_BOT"
    BAD_BOT = "BAD_BOT"
    WHITELISTED = "WHITELISTED"
    RATE_LIMITED = "RATE_LIMITED"
    ALLOWED = "ALLOWED"


VERDICT_STATUS = {
    Verdict.GOOD_BOT: EventStatus.GOOD_BOT,
    Verdict.BAD_BOT: EventStatus.BAD_BOT,
    Verdict.WHITELISTED: EventStatus.WHITELISTED,
    Verdict.RATE_LIMITED: EventStatus.BLOCKED,
    Verdict.ALLOWED: EventStatus.ALLOWED,
}

BLOCKING_VERDICTS = frozenset({Verdict.BAD_BOT, Verdict.RATE_LIMITED})


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    ip: Optional[str]
    user_agent: str
    count: Optional[int] = None
    recorded: bool = False

    @property
    def blocked(self) -> bool:
        return self.verdict in BLOCKING_VERDICTS


# =========================
# Matchers
# =========================

def matches_any(user_agent: str, needles: Sequence[str]) -> bool:
    """
    Case-insensitive substring match; blank entries never match.
    """
    haystack = user_agent.lower()
    for needle in needles:
        needle = needle.strip().lower() if needle else ""
        if needle and needle in haystack:
            return True
    return False


# =========================
# Blocking response contract
# =========================

def retry_after_seconds(config: ThrottleConfig) -> int:
    return max(60, config.block_minutes * 60)


def blocking_headers(config: ThrottleConfig) -> Dict[str, str]:
    return {
        "Retry-After": str(retry_after_seconds(config)),
        "X-RateLimit-Limit": str(config.limit_per_minute),
        "X-RateLimit-Window": "60",
        "Cache-Control": "no-cache, no-store, must-revalidate",
    }


def blocking_message(config: ThrottleConfig) -> str:
    minutes = max(1, config.block_minutes)
    return f"Too many requests. Please try again in {minutes} minutes."


# =========================
# Classifier
# =========================

class Classifier:
    """
    Ordered pipeline, first match wins:

    1. allowed bot   -> GOOD_BOT      (never blocked, however prolific)
    2. blocked bot   -> BAD_BOT       (blocked even under the limit)
    3. whitelist IP  -> WHITELISTED
    4. over limit    -> RATE_LIMITED  (notifies operators)
    5. otherwise     -> ALLOWED

    Each path records exactly one event. Internal faults fail open.
    """

    def __init__(
        self,
        event_store: EventStore,
        counter: RateCounter,
        notifier: Optional[Notifier] = None,
    ):
        self.store = event_store
        self.counter = counter
        self.notifier = notifier

    def evaluate(
        self,
        config: ThrottleConfig,
        headers: Mapping[str, str],
        peer_address: Optional[str],
    ) -> Decision:
        """
        Resolve the client identity, then classify.
        """
        user_agent = sanitize_user_agent(_header(headers, "user-agent"))

        try:
            ip = require_client_ip(headers, peer_address)
        except IdentityUnresolvable as e:
            logger.warning(f"Allowing request without throttling: {e}")
            return Decision(verdict=Verdict.ALLOWED, ip=None, user_agent=user_agent)

        return self.classify(config, ip, user_agent)

    def classify(self, config: ThrottleConfig, ip: str, user_agent: str) -> Decision:
        user_agent = sanitize_user_agent(user_agent)

        try:
            return self._classify(config, ip, user_agent)
        except Exception:
            logger.exception(f"Classification failed for {ip}, allowing")
            return Decision(verdict=Verdict.ALLOWED, ip=ip, user_agent=user_agent)

    def _classify(self, config: ThrottleConfig, ip: str, user_agent: str) -> Decision:
        if matches_any(user_agent, config.allowed_bots):
            return self._finish(config, Verdict.GOOD_BOT, ip, user_agent)

        if matches_any(user_agent, config.blocked_bots):
            return self._finish(config, Verdict.BAD_BOT, ip, user_agent)

        if ip in config.whitelist:
            return self._finish(config, Verdict.WHITELISTED, ip, user_agent)

        try:
            limited, count = self._over_limit(config, ip)
        except ThrottleError as e:
            logger.error(f"Rate check failed for {ip}, allowing: {e}")
            return self._finish(config, Verdict.ALLOWED, ip, user_agent)

        if limited:
            decision = self._finish(config, Verdict.RATE_LIMITED, ip, user_agent, count)
            if self.notifier is not None:
                self._notify(config, ip, count, user_agent)
            return decision

        return self._finish(config, Verdict.ALLOWED, ip, user_agent, count)

    # ------------------------------------------------------

    def _over_limit(self, config: ThrottleConfig, ip: str):
        limit = max(1, config.limit_per_minute)
        if config.atomic_counting:
            # Count includes this request.
            count = self.counter.increment(ip, 1)
            return count > limit, count
        count = self.counter.get_count(ip, 1)
        return count >= limit, count

    def _notify(self, config: ThrottleConfig, ip: str, count: int, user_agent: str) -> None:
        try:
            self.notifier.maybe_notify(config, ip, count, user_agent)
        except ThrottleError as e:
            logger.error(f"Attack notification failed: {e}")

    def _finish(
        self,
        config: ThrottleConfig,
        verdict: Verdict,
        ip: str,
        user_agent: str,
        count: Optional[int] = None,
    ) -> Decision:
        status = VERDICT_STATUS[verdict]
        recorded = self._record(config, ip, user_agent, status, counted=count is not None)

        if verdict in BLOCKING_VERDICTS:
            logger.info(f"Blocking {ip}: {verdict.value} (count={count})")

        return Decision(
            verdict=verdict,
            ip=ip,
            user_agent=user_agent,
            count=count,
            recorded=recorded,
        )

    def _record(
        self,
        config: ThrottleConfig,
        ip: str,
        user_agent: str,
        status: EventStatus,
        counted: bool = False,
    ) -> bool:
        if config.log_to_file:
            emit_traffic_event({
                "ip": ip,
                "user_agent": user_agent,
                "status": status.value,
                "request_count": 1,
            })

        try:
            self.store.append(ip, user_agent, status, 1)
        except ThrottleError as e:
            logger.error(f"Event not recorded for {ip} ({status.value}): {e}")
            return False

        # The atomic 1-minute key already holds this request.
        keep = (1,) if config.atomic_counting and counted else ()
        self.counter.invalidate(ip, keep=keep)
        return True


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value
