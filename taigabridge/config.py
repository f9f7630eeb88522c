from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TAIGA_BASE_URL = "https://api.taiga.io/api/v1"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Telegram
    telegram_bot_token: str = Field(min_length=1)
    telegram_webhook_secret: str | None = None
    telegram_webhook_url: str | None = None  # registered with Telegram on startup when set
    telegram_message_limit: int = Field(default=3500, gt=0, le=4096)

    # Taiga
    taiga_base_url: str = DEFAULT_TAIGA_BASE_URL
    taiga_request_timeout: float = Field(default=30.0, gt=0)

    # Link storage
    link_storage_path: str = "taiga_links.json"

    # Notifications
    notifications_enabled: bool = True
    poll_interval_seconds: int = Field(default=30, gt=0)

    # /new wizard
    wizard_timeout_seconds: int = Field(default=900, gt=0)

    @field_validator("taiga_base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("taiga_base_url must be an http(s) URL with a host")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
