# app/config.py
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # === General ===
    app_name: str = "Prophet"
    app_env: str = "local"  # local | development | production
    app_base_url: str = "http://localhost:8000"
    allowed_origins: List[str] = ["http://localhost:3000"]

    # === Database ===
    database_url: str = "sqlite:///./prophet.db"

    # === Auth ===
    jwt_secret: str = Field("dev-secret-change-me", description="HS256 signing key")
    jwt_exp_hours: int = 24
    cron_secret: Optional[str] = Field(None, description="Bearer secret for the daily orchestrator")

    # === Logging / observability ===
    log_level: str = "INFO"
    sentry_dsn: Optional[str] = None
    metrics_enabled: bool = True

    # === Rate limiting ===
    rate_limit_job_start: str = "30/minute"

    # === Providers ===
    google_places_api_key: Optional[str] = None
    openweathermap_api_key: Optional[str] = None
    firecrawl_api_key: Optional[str] = None
    dataforseo_login: Optional[str] = None
    dataforseo_password: Optional[str] = None
    outscraper_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    provider_timeout_seconds: float = 30.0
    provider_concurrency: int = 3
    provider_delay_seconds: float = 0.5

    # === Pipelines ===
    pipeline_timeout_seconds: float = 300.0
    stream_poll_interval_seconds: float = 2.0
    stream_max_polls: int = 300  # ~10 min at 2s
    recent_jobs_window_seconds: int = 120
    stale_job_after_seconds: int = 900
    weekly_refresh_weekday: int = 0  # Monday

    # === Ambient feed ===
    ambient_card_delay_seconds: float = 0.2
    ambient_tip_delay_seconds: float = 3.0
    ambient_tip_count: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton Settings instance with simple env overrides."""
    s = Settings()

    env = os.getenv("ENVIRONMENT", s.app_env).lower()
    if env == "production":
        s.log_level = "WARNING"
    elif env == "development":
        s.log_level = "DEBUG"

    return s


# Module-level export so `from app.config import settings` keeps working
settings = get_settings()
