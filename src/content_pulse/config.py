# ABOUTME: Process configuration for content-pulse using Pydantic Settings.
# ABOUTME: Loads process-level settings from environment variables and .env file.

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings; per-content-type runtime settings live in the settings store."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    db_path: Path = Path("./content_pulse.db")

    # Upstream fetching
    http_timeout: float = 10.0
    http_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.3 Safari/605.1.15"
    )
    max_items_per_fetch: int = 20

    # Keyword search API
    search_api_key: SecretStr | None = None
    search_keywords: list[str] = Field(default_factory=list)
    search_results_per_keyword: int = 5

    # Quota guard
    quota_base_delay_seconds: int = 60
    quota_max_delay_seconds: int = 3600

    # Scheduling
    max_concurrency: int = 8
    timezone: str = "Asia/Bangkok"
    news_interval_minutes: int = 5
    video_day_interval_minutes: int = 30
    video_night_interval_minutes: int = 120
    night_start_hour: int = 23
    night_end_hour: int = 6
    review_interval_minutes: int = 60
    scheduler_tick_seconds: int = 30
    settings_poll_seconds: int = 30

    # Defaults for runtime settings when the store has no row yet
    default_max_item_count: int = 21
    default_cleanup_frequency_minutes: int = 60
    default_moderation_keywords: list[str] = Field(
        default_factory=lambda: ["spam", "fake", "clickbait", "scam", "adult", "explicit"]
    )
    rejected_retention_days: int = 7

    # Operator surface
    run_history_size: int = 200
    host: str = "127.0.0.1"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Async SQLite URL for the content store."""
        return f"sqlite+aiosqlite:///{self.db_path}"


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()
