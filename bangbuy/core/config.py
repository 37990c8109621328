# bangbuy/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import BRAND_NAME, MAX_MESSAGE_LENGTH


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "staging", "production", "test"] = "development"
    is_testing: bool = False

    # Persistence / infrastructure
    database_url: str = Field(
        default="sqlite:///./bangbuy.db",
        description="SQLAlchemy database URL",
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for Celery broker and cross-process realtime relay",
    )
    redis_socket_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Connect and read timeout for the realtime relay Redis client",
    )

    # Email dispatch
    email_provider: Literal["console", "resend"] = Field(
        default="console",
        description="Email provider name",
    )
    resend_api_key: SecretStr | None = Field(
        default=None,
        description="API key for Resend provider (optional outside production)",
    )
    email_from: str = Field(
        default=f"{BRAND_NAME} <noreply@bangbuy.app>",
        description="From header used for outbound email",
    )
    email_dispatch_timeout_seconds: float = Field(
        default=10.0,
        description="Deadline applied to every external email dispatch",
    )
    site_url: str = Field(
        default="http://localhost:3000",
        description="Public site URL used for deep links in emails",
    )

    # Notifications
    enable_message_email_notifications: bool = Field(
        default=False,
        description="Master switch for the first-message email batch",
    )
    first_message_batch_limit: int = Field(default=100, ge=1, le=1000)
    first_message_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Delivery attempts before a conversation's first-message email is given up",
    )
    unread_reminder_batch_limit: int = Field(
        default=200,
        ge=1,
        le=5000,
        description="Users examined per unread-reminder batch",
    )
    every_message_batch_limit: int = Field(default=100, ge=1, le=1000)
    every_message_lookback_hours: int = Field(
        default=24,
        ge=1,
        description="Only messages this recent are emailed to every-message subscribers",
    )
    cron_secret: SecretStr | None = Field(
        default=None,
        description="Bearer token required by the cron trigger endpoint (unset disables the check)",
    )
    test_email: str = Field(
        default="test@example.com",
        description="Recipient for force-test notification sends",
    )

    # Messaging
    message_max_length: int = Field(default=MAX_MESSAGE_LENGTH, ge=1)
    typing_ttl_seconds: float = Field(default=2.0, gt=0)
    typing_sweep_interval_seconds: float = Field(default=1.0, gt=0)
    broadcaster_queue_size: int = Field(default=100, ge=1)
    relay_queue_size: int = Field(default=1000, ge=1)
    sse_heartbeat_interval: int = Field(default=15, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("enable_message_email_notifications", "is_testing", mode="before")
    @classmethod
    def _coerce_flag(cls, value: object) -> bool | object:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return value

    @field_validator("site_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def get_resend_api_key(self) -> str | None:
        if self.resend_api_key is None:
            return None
        return self.resend_api_key.get_secret_value() or None

    def get_cron_secret(self) -> str | None:
        if self.cron_secret is None:
            return None
        return self.cron_secret.get_secret_value() or None


settings = Settings()
