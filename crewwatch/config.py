"""Application configuration management."""
from pydantic import model_validator, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from functools import lru_cache
from typing import Annotated
import logging

LOAD_STRATEGIES = ("lazy", "eager")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    environment: str = "development"
    log_dir: str = "logs"

    # Supabase project
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_service_email: str = ""  # Account the monitoring store signs in as
    supabase_service_password: str = ""
    request_timeout_seconds: float = 15.0
    token_refresh_margin_seconds: int = 60  # Refresh this long before the access token expires
    token_refresh_retry_seconds: int = 30

    # Realtime change feed
    realtime_channel: str = "unified_crew_monitoring"
    realtime_heartbeat_seconds: int = 30  # Phoenix keepalive
    realtime_reconnect_attempts: int = 5
    realtime_reconnect_delay_seconds: float = 1.0  # Doubled per attempt

    # Crew monitoring
    crew_heartbeat_seconds: int = 30
    stale_session_cleanup_minutes: int = 5
    session_history_limit: int = 50
    activity_log_limit: int = 50
    summary_default_days: int = 7
    notification_history_size: int = 50
    dashboard_load_strategy: str = "eager"

    # Admin access
    # Comma-separated in the environment, so skip the JSON decoding of complex values
    admin_emails: Annotated[set[str], NoDecode] = set()

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_admin_emails(cls, value):
        """Parse comma-separated admin emails from environment variables."""
        if value is None:
            return set()
        if isinstance(value, str):
            items = [item.strip().lower() for item in value.split(",") if item.strip()]
        elif isinstance(value, (list, tuple, set)):
            items = [str(item).strip().lower() for item in value if str(item).strip()]
        else:
            raise TypeError("admin_emails must be provided as a string or sequence")
        return set(items)

    def is_admin_email(self, email: str | None) -> bool:
        """Determine if the provided email belongs to an administrator."""
        if not email:
            return False
        normalized = email.strip().lower()
        return normalized in self.admin_emails

    @property
    def has_service_account(self) -> bool:
        return bool(self.supabase_service_email and self.supabase_service_password)

    @model_validator(mode="after")
    def validate_all_config(self):
        """Validate intervals and limits and normalize the project URL."""
        logger = logging.getLogger(__name__)

        self.supabase_url = self.supabase_url.strip().rstrip("/")
        if not self.supabase_url.startswith(("http://", "https://")):
            raise ValueError("supabase_url must start with http:// or https://")

        if self.environment == "production" and not self.supabase_anon_key:
            raise ValueError("supabase_anon_key must be set in production")

        if self.dashboard_load_strategy not in LOAD_STRATEGIES:
            raise ValueError(
                f"Unsupported dashboard_load_strategy: {self.dashboard_load_strategy}. "
                f"Use one of {', '.join(LOAD_STRATEGIES)}."
            )

        for name in (
            "realtime_heartbeat_seconds",
            "crew_heartbeat_seconds",
            "stale_session_cleanup_minutes",
            "session_history_limit",
            "activity_log_limit",
            "summary_default_days",
            "notification_history_size",
            "token_refresh_margin_seconds",
            "token_refresh_retry_seconds",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")

        if self.realtime_reconnect_attempts < 0:
            raise ValueError("realtime_reconnect_attempts cannot be negative")

        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")

        if not self.supabase_anon_key:
            logger.warning("SUPABASE_ANON_KEY is empty; remote calls will be rejected by the gateway")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
