"""
Application configuration
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Flag Rollout Engine"
    APP_VERSION: str = "0.1.0"
    # Debug switches structlog to the console renderer
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    LOG_LEVEL: Optional[str] = None  # Overrides the DEBUG-derived level when set

    # Flag cache
    FLAG_CACHE_TTL_SECONDS: float = 60.0
    FLAG_CACHE_GRACE_SECONDS: float = 300.0  # Last good snapshot is served this long past the TTL
    FLAG_CACHE_REFRESH_INTERVAL_SECONDS: float = 60.0

    # Flag store access
    FLAG_STORE_TIMEOUT_SECONDS: float = 5.0
    FLAG_STORE_RETRY_ATTEMPTS: int = 3

    # Bucketing
    BUCKET_CACHE_MAX_SIZE: int = 10000

    # Rollout orchestration
    METRICS_TIMEOUT_SECONDS: float = 10.0
    ROLLOUT_TIMER_MAX_SLEEP_SECONDS: float = 300.0  # Timers wake at least this often to re-check state
    ROLLOUT_STEP_RETRY_SECONDS: float = 30.0  # Delay before a timer retries a step that failed without a state change
    ROLLOUT_HISTORY_MAX_ENTRIES: int = 200  # Oldest history entries are dropped past this

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
