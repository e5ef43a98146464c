"""
Configuration management for marketsync
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "marketsync"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True
    log_json: bool = False  # JSON lines in the file sinks
    log_retention_days: int = 30
    error_log_retention_days: int = 90

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./marketsync.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    sqlite_busy_timeout_seconds: float = 60.0

    # Rate limit guard (per tenant)
    rate_limit_max_requests_per_window: int = 30
    rate_limit_window_seconds: float = 60.0
    rate_limit_min_interval_seconds: float = 2.0
    rate_limit_default_cooldown_seconds: int = 300

    # Platform clients
    api_timeout_seconds: float = 10.0
    api_max_retries: int = 3
    api_retry_base_delay: float = 1.0
    api_retry_max_delay: float = 5.0
    meta_graph_api_version: str = "v18.0"
    meta_graph_base_url: str = "https://graph.facebook.com"
    shopify_api_version: str = "2024-01"

    # Job queue
    queue_default_max_attempts: int = 5
    queue_backoff_base_seconds: float = 5.0
    queue_backoff_max_seconds: float = 300.0
    queue_job_timeout_seconds: int = 1800  # 30 minutes
    queue_max_stalled: int = 3
    queue_stall_grace_seconds: int = 60
    queue_completed_retention_hours: int = 24
    queue_failed_retention_days: int = 7

    # Worker pool
    worker_concurrency: int = 3
    worker_poll_interval_seconds: int = 15
    worker_batch_size: int = 10
    worker_id: Optional[str] = None

    # Bulk export poller
    bulk_poll_initial_delay_seconds: float = 30.0
    bulk_poll_max_attempts: int = 20
    bulk_poll_delay_growth: float = 1.1
    bulk_poll_max_delay_seconds: float = 120.0
    bulk_busy_retry_seconds: float = 120.0
    bulk_busy_max_deferrals: int = 30  # then each busy check spends an attempt
    bulk_cancel_retry_seconds: float = 15.0
    bulk_retry_window_days: int = 365  # abandoned exports are retried over at most this range
    ingest_batch_size: int = 100

    # Gap detection & backfill
    gap_lookback_days: int = 60
    backfill_threshold_days: int = 3
    backfill_min_rows_per_day: int = 1
    backfill_chunk_delay_seconds: float = 5.0
    backfill_tenant_delay_seconds: float = 2.0
    backfill_max_chunk_days: int = 30

    # Recent / historical sync windows
    recent_sync_days: int = 7
    history_chunk_days: int = 90
    history_max_months: int = 12

    # Reconnect (destructive rebuild)
    reconnect_history_months: int = 12
    reconnect_lock_ttl_seconds: int = 1800

    # Schedules
    enable_scheduler: bool = True
    scheduler_timezone: str = "UTC"
    daily_sync_hour: int = 3
    gap_audit_hour: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
