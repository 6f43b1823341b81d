from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENCRYPTION_SALT = "default-salt-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/kpisync.db"

    # Credential encryption
    encryption_key_salt: str = DEFAULT_ENCRYPTION_SALT
    kdf_iterations: int = 100_000

    # Scheduling
    tz: str = "Asia/Kolkata"
    default_cron: str = "0 2 * * *"
    schedule_retry_delay_seconds: int = 600

    # Queue and workers
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 5.0
    worker_concurrency: int = 1
    worker_poll_interval_seconds: float = 1.0
    rate_limit_max_jobs: int = 5
    rate_limit_window_seconds: float = 60.0
    stall_window_seconds: float = 300.0
    shutdown_grace_seconds: float = 30.0
    run_all_stagger_seconds: float = 30.0

    # Queue housekeeping
    completed_job_retention_hours: float = 24.0
    failed_job_retention_hours: float = 168.0
    queue_clean_interval_minutes: float = 60.0

    # Notifications
    notification_cooldown_seconds: float = 300.0
    notify_success: bool = False
    daily_summary_cron: str | None = None
    discord_webhook_url: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
