"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflow.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    # Redis Settings (Celery broker for the timeout sweep)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Timeout scheduler
    TIMEOUT_SWEEP_INTERVAL_SECONDS: int = 60
    TIMEOUT_SWEEP_BATCH_SIZE: int = 100
    TIMEOUT_LEASE_SECONDS: int = 120

    # Directory (identity / role service)
    DIRECTORY_URL: Optional[str] = None
    DIRECTORY_TIMEOUT: float = 10.0
    DIRECTORY_RETRY_PRESET: str = "directory"
    # JSON policy document overriding the preset, e.g. {"policy": "fixed", "max_retries": 2}
    DIRECTORY_RETRY_POLICY: Optional[dict] = None

    # Notification egress
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
