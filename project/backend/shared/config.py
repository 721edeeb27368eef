"""
Configuration management.

Centralized environment variable management and validation.
"""

from typing import Dict, Literal, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from shared.errors import ConfigError


# Local development ports of the stage services
DEFAULT_STAGE_SERVICE_URLS = {
    "upload": "http://localhost:8083",
    "narrate": "http://localhost:8080",
    "align": "http://localhost:8081",
    "render": "http://localhost:8082",
    "compose": "http://localhost:8084",
    "polish": "http://localhost:8086",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # Allow case-insensitive env var matching
        extra="ignore"
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # LOG_FILE: Optional path for a rotating JSON log file (stdout only when unset)
    log_file: Optional[str] = None

    # Redis configuration (progress pub/sub)
    redis_url: Optional[str] = None

    # Supabase configuration (progress snapshots, credit accounts)
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Retry policy
    # Delay before attempt n+1 is retry_base_delay * 2^(n-1), capped at retry_max_delay
    retry_max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0

    # Stage execution
    stage_timeout_seconds: float = 600.0
    stage_service_urls: Dict[str, str] = dict(DEFAULT_STAGE_SERVICE_URLS)
    stage_auth_token: Optional[str] = None

    # Progress channel
    # PROGRESS_STREAM_URL: SSE endpoint, queried as {url}?jobId={job_id}
    progress_stream_url: Optional[str] = None
    progress_connect_timeout: float = 5.0
    progress_poll_interval: float = 2.0
    # Inactive source takes over after the active one is silent for factor * poll interval
    progress_staleness_factor: float = 2.0
    progress_unavailable_threshold: int = 3
    progress_reconnect_interval: float = 2.0
    # Minimum seconds between job_progress row writes (done/error always written)
    progress_persist_interval: float = 0.9
    # Seconds a JobHandle keeps progress subscriptions open after the job ends
    progress_close_grace: float = 4.0

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ConfigError("REDIS_URL must start with redis:// or rediss://")
        return v

    @field_validator("supabase_url", "progress_stream_url")
    @classmethod
    def validate_http_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate HTTP(S) URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ConfigError(f"{v!r} must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("stage_service_urls")
    @classmethod
    def validate_stage_service_urls(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Merge overrides onto the defaults and validate each URL."""
        merged = {**DEFAULT_STAGE_SERVICE_URLS, **v}
        for stage, url in merged.items():
            if not url.startswith(("http://", "https://")):
                raise ConfigError(f"Service URL for stage '{stage}' must be a valid HTTP/HTTPS URL")
        return {stage: url.rstrip("/") for stage, url in merged.items()}

    @field_validator("retry_max_attempts", "progress_unavailable_threshold")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ConfigError("Attempt and failure thresholds must be at least 1")
        return v

    @field_validator(
        "retry_base_delay",
        "retry_max_delay",
        "stage_timeout_seconds",
        "progress_connect_timeout",
        "progress_poll_interval",
        "progress_staleness_factor",
        "progress_reconnect_interval",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ConfigError("Delays, intervals and timeouts must be positive")
        return v

    @property
    def progress_staleness_threshold(self) -> float:
        """Seconds of silence after which the inactive progress source takes over."""
        return self.progress_poll_interval * self.progress_staleness_factor


# Singleton instance
try:
    settings = Settings()
except Exception as e:
    # Re-raise as ConfigError for consistency
    if isinstance(e, ConfigError):
        raise
    raise ConfigError(f"Failed to load configuration: {str(e)}") from e
