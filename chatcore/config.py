from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    ChatCore settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Local store
    DATABASE_URL: str = "sqlite+aiosqlite:///./chatcore.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Wire transport; empty means run offline
    SERVER_URL: str = ""
    RECONNECT_INTERVAL_SECONDS: float = 5.0
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0

    # Outbound scheduler
    RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    RETRY_BACKOFF_MAX_SECONDS: float = 300.0
    RETRY_MAX_ATTEMPTS: Optional[int] = None
    SCHEDULER_BLOCKING_RETRIES: bool = False

    # Periodic reconciliation; 0 disables it
    SYNC_INTERVAL_SECONDS: float = 0.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
