"""
Configuration management for the Brand Metrics platform
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Brand Metrics Platform"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./brand_metrics.db"

    # Store reporting timezone (all buckets are civil days/hours here)
    shop_timezone: str = "America/New_York"

    # Shopify
    shopify_api_version: str = "2024-01"
    shopify_recent_sync_days: int = 30

    # Meta Marketing API
    meta_api_version: str = "v18.0"
    meta_graph_url: str = "https://graph.facebook.com"
    meta_page_limit: int = 500

    # Historical backfill
    backfill_lookback_months: int = 12  # Meta reach data is limited to 13 months
    backfill_chunk_days: int = 90
    backfill_seconds_per_job: int = 30  # Used for completion estimates only
    backfill_min_estimate_minutes: int = 5

    # Meta queue defaults
    meta_queue_attempts: int = 5
    meta_queue_backoff_seconds: float = 10.0
    meta_queue_timeout_seconds: int = 45 * 60
    meta_queue_keep_completed: int = 50
    meta_queue_keep_failed: int = 5

    # Shopify queue defaults
    shopify_queue_attempts: int = 5
    shopify_queue_backoff_seconds: float = 5.0
    shopify_queue_timeout_seconds: int = 30 * 60
    shopify_queue_keep_completed: int = 50
    shopify_queue_keep_failed: int = 20

    # Stall detection
    queue_max_stalled_count: int = 3
    queue_enabled: bool = True

    # Worker batch sizes
    worker_max_jobs_scheduled: int = 5
    worker_max_jobs_manual: int = 10

    # Meta rate limiter
    rate_limit_min_interval_seconds: float = 0.5
    rate_limit_reset_seconds: float = 300.0
    rate_limit_max_retries: int = 3
    rate_limit_request_timeout_seconds: float = 10.0

    # Sync Schedules
    process_queue_interval_seconds: int = 60
    recover_stalled_interval_seconds: int = 300
    daily_sync_schedule: str = "0 2 * * *"

    # Dashboard Basic Auth (gate for the whole app)
    dash_user: str = ""
    dash_pass: str = ""

    # Shared secret for queue-processing calls from external cron
    cron_secret: Optional[str] = None

    # Feature Flags
    enable_scheduler: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
