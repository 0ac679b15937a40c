"""
Application Settings and Configuration.

Loads configuration from environment variables and .env files.
Covers the database, logging, rule engine scheduling and retry policy.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from .paths import default_database_url, default_log_directory


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables:
        DATABASE_URL: Database connection URL (default: sqlite in app data dir)
        ENVIRONMENT: Deployment environment name (default: development)
        LOG_LEVEL: Root log level (default: INFO)
        SENTINEL_TICK_INTERVAL_SECONDS: Rule evaluation period (default: 60)
    """

    # Database Configuration
    database_url: str = Field(
        default_factory=default_database_url,
        alias="DATABASE_URL"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_directory: Optional[str] = Field(default=None, alias="SENTINEL_LOG_DIRECTORY")
    log_to_file: bool = Field(default=False, alias="SENTINEL_LOG_TO_FILE")

    # Rule engine scheduling
    tick_interval_seconds: float = Field(default=60.0, alias="SENTINEL_TICK_INTERVAL_SECONDS")
    stats_batch_size: int = Field(default=1000, alias="SENTINEL_STATS_BATCH_SIZE")

    # Bounded retry around market data and store calls inside a cycle
    retry_max_attempts: int = Field(default=3, alias="SENTINEL_RETRY_MAX_ATTEMPTS")
    retry_initial_delay_seconds: float = Field(default=0.5, alias="SENTINEL_RETRY_INITIAL_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=5.0, alias="SENTINEL_RETRY_MAX_DELAY_SECONDS")
    retry_backoff_multiplier: float = Field(default=2.0, alias="SENTINEL_RETRY_BACKOFF_MULTIPLIER")

    @field_validator("tick_interval_seconds")
    @classmethod
    def validate_tick_interval(cls, v: float) -> float:
        """Reject non-positive tick intervals."""
        if v <= 0:
            raise ValueError("tick interval must be positive")
        return v

    @field_validator("retry_max_attempts", "stats_batch_size")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    def resolved_log_directory(self) -> str:
        return self.log_directory or default_log_directory()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
