"""Runtime configuration loaded from the environment."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Support chat settings, read from ``SUPPORT_CHAT_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="SUPPORT_CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    environment: Literal["development", "test", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # Admin access
    admin_secret: str = Field(default="")
    agent_id: str = "agent"
    admin_dashboard_url: str = "http://localhost:3000/admin/chat-monitor"

    # Sessions and throttling
    session_ttl_seconds: int = 2 * 60 * 60
    rate_limit_max_messages: int = 15
    rate_limit_window_seconds: float = 60.0

    # Message pipeline and escalation
    max_message_length: int = 2000
    escalation_confidence_threshold: float = 0.6
    escalation_message_count: int = 15
    stale_after_minutes: int = 30

    # Completion engine
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    completion_timeout_seconds: float = 20.0

    # Real-time publisher
    publisher: Literal["memory", "pusher"] = "memory"
    pusher_app_id: Optional[str] = None
    pusher_key: Optional[str] = None
    pusher_secret: Optional[str] = None
    pusher_cluster: str = "us2"

    # Email notifications
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: Optional[str] = None
    notify_email: Optional[str] = None
    email_new_conversation: bool = True
    email_needs_attention: bool = True
    email_lead_capture: bool = True


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
