"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Fetch layer settings loaded from environment variables."""

    # Cache settings
    cache_enabled: bool = True
    cache_ttl_seconds: float = 300.0          # 5 minutes
    refresh_cache_on_access: bool = True

    # Retry settings (delay grows linearly: retry_delay * attempt)
    retry_count: int = 0
    retry_delay_seconds: float = 1.0

    # Default HTTP producer
    http_timeout_seconds: float = 30.0
    http_user_agent: Optional[str] = None

    # Performance tracking of fetch operations
    performance_tracking_enabled: bool = True

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "FETCHLAYER_"


settings = Settings()
