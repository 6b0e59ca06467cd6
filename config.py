from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from schemas import ThrottleConfig
from validation import split_lines, split_list


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # =========================
    # Storage
    # =========================
    DATABASE_URL: str = Field(default="sqlite:///./throttle.db")
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # =========================
    # Protected origin
    # =========================
    UPSTREAM_URL: str = Field(default="http://localhost:8080")

    # =========================
    # Control API (settings collaborator, optional)
    # =========================
    CONTROL_API_BASE_URL: Optional[str] = None
    CONTROL_WORKER_SHARED_SECRET: Optional[str] = None

    # =========================
    # Throttling policy
    # =========================
    LIMIT_PER_MINUTE: int = Field(default=30, gt=0)
    BLOCK_MINUTES: int = Field(default=30, gt=0)
    RETENTION_DAYS: int = Field(default=7, ge=0)
    WHITELIST: str = ""
    ALLOWED_BOTS: str = ""
    BLOCKED_BOTS: str = ""
    ATOMIC_COUNTING: bool = True
    COUNT_CACHE_TTL_SECONDS: int = Field(default=60, gt=0)
    CLEANUP_GUARD_HOURS: int = Field(default=6, ge=0)

    # =========================
    # Notifications
    # =========================
    NOTIFICATIONS_ENABLED: bool = False
    NOTIFICATION_RECIPIENTS: str = ""
    NOTIFICATION_COOLDOWN_SECONDS: int = Field(default=900, ge=0)

    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # =========================
    # Traffic file log
    # =========================
    LOG_TO_FILE: bool = False
    TRAFFIC_LOG_PATH: str = "throttle-traffic.log"
    TRAFFIC_LOG_MAX_BYTES: int = 10 * 1024 * 1024

    def snapshot(self) -> ThrottleConfig:
        """
        Immutable policy snapshot handed to each evaluation.
        """
        return ThrottleConfig(
            limit_per_minute=self.LIMIT_PER_MINUTE,
            block_minutes=self.BLOCK_MINUTES,
            retention_days=self.RETENTION_DAYS,
            whitelist=frozenset(split_list(self.WHITELIST)),
            allowed_bots=tuple(split_lines(self.ALLOWED_BOTS)),
            blocked_bots=tuple(split_lines(self.BLOCKED_BOTS)),
            notifications_enabled=self.NOTIFICATIONS_ENABLED,
            notification_recipients=tuple(split_list(self.NOTIFICATION_RECIPIENTS)),
            log_to_file=self.LOG_TO_FILE,
            atomic_counting=self.ATOMIC_COUNTING,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
