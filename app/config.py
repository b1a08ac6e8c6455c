"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Async Download Service"
    log_level: str = "INFO"
    port: int = 3000

    # Submission limits
    min_file_id: int = 10_000
    max_file_id: int = 100_000_000
    max_files_per_job: int = 1000
    max_batch_jobs: int = 10

    # Scheduler
    queue_concurrency: int = 5
    queue_max_retries: int = 3
    queue_retry_backoff_seconds: float = 0.0  # 0 = re-queue immediately
    shutdown_timeout_seconds: float = 30.0

    # Worker
    worker_batch_size: int = 3
    download_url_ttl_seconds: int = 3600

    # Push / poll
    sse_heartbeat_seconds: float = 15.0
    max_subscribers_per_job: int = 100
    max_pending_events: int = 256
    poll_cache_seconds: int = 2
    terminal_cache_seconds: int = 3600

    # Housekeeping
    job_retention_hours: int = 24
    cleanup_interval_seconds: float = 3600.0

    # Storage (simulated unless a real client is injected)
    storage_bucket: str = "downloads"
    storage_min_delay_seconds: float = 1.0
    storage_max_delay_seconds: float = 3.0
    storage_failure_rate: float = 0.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
