import logging
from concurrent.futures import Executor
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from emailer import Mailer
from errors import PersistenceFailure
from schemas import ThrottleConfig
from state_store import LAST_NOTIFICATION, StateStore
from validation import valid_emails

logger = logging.getLogger("throttle.worker.notify")

DEFAULT_COOLDOWN_SECONDS = 900


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notifier:
    """
    Alerts operators when a rate-limit verdict fires.

    One global cooldown covers every IP, which caps mail volume during
    a distributed attack; simultaneous attackers share one alert.
    """

    def __init__(
        self,
        mailer: Mailer,
        state_store: StateStore,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.mailer = mailer
        self.state = state_store
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.executor = executor
        self._clock = clock

    def recipients(self, config: ThrottleConfig) -> List[str]:
        return valid_emails(config.notification_recipients)

    def on_cooldown(self, now: datetime) -> bool:
        last = self.state.get(LAST_NOTIFICATION)
        if last is None:
            return False
        return now - last < self.cooldown

    def maybe_notify(
        self,
        config: ThrottleConfig,
        ip: str,
        count: int,
        user_agent: str = "unknown",
    ) -> bool:
        """
        Send one alert unless disabled, unaddressed, or cooling down.
        Returns True when an alert was handed to the mailer.
        """
        if not config.notifications_enabled:
            return False

        recipients = self.recipients(config)
        if not recipients:
            return False

        now = self._clock()
        try:
            if self.on_cooldown(now):
                return False
            # Written before sending so a failing mailer still advances the cooldown.
            self.state.set(LAST_NOTIFICATION, now)
        except PersistenceFailure as e:
            logger.error(f"Notification skipped, cooldown state unavailable: {e}")
            return False

        subject, body = build_message(ip, count, user_agent, now)

        if self.executor is not None:
            self.executor.submit(self._deliver, recipients, subject, body)
        else:
            self._deliver(recipients, subject, body)
        return True

    def _deliver(self, recipients: Sequence[str], subject: str, body: str) -> None:
        try:
            sent, error = self.mailer.send(recipients, subject, body)
        except Exception as e:
            # Mailer is an external collaborator; its faults must not escape.
            logger.error(f"Mailer raised while sending attack alert: {e}")
            return
        if sent:
            logger.info(f"Attack alert sent to {len(recipients)} recipient(s)")
        else:
            logger.warning(f"Attack alert not delivered: {error}")


def build_message(ip: str, count: int, user_agent: str, when: datetime):
    subject = f"Throttle: mass attack detected from IP {ip}"
    body = (
        f"Massive number of requests detected from IP: {ip}\n"
        f"Requests in last minute: {count}\n"
        f"Time: {when.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        f"User Agent: {user_agent}\n"
        "\n"
        "Please check your website security."
    )
    return subject, body
