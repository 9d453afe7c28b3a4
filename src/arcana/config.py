from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ARCANA_", env_file=".env", extra="ignore")

    # Instance ID for distributed deployments
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Shared store / broker
    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")
    task_backend: str = Field(default="redis", validation_alias="TASK_BACKEND")  # redis or memory
    key_prefix: str = Field(default="arcana", validation_alias="TASK_KEY_PREFIX")

    # Locks and leader election (seconds)
    lock_ttl: float = Field(default=30.0, validation_alias="LOCK_TTL")
    election_ttl: float = Field(default=30.0, validation_alias="ELECTION_TTL")
    election_interval: float = Field(default=10.0, validation_alias="ELECTION_INTERVAL")

    # Job processing
    job_ttl: int = Field(default=86400 * 7, validation_alias="JOB_TTL")  # 7 days
    job_lock_duration: float = Field(default=30.0, validation_alias="JOB_LOCK_DURATION")
    stalled_check_interval: float = Field(default=30.0, validation_alias="STALLED_CHECK_INTERVAL")
    poll_interval: float = Field(default=1.0, validation_alias="JOB_POLL_INTERVAL")
    default_job_attempts: int = Field(default=3, validation_alias="DEFAULT_JOB_ATTEMPTS")
    default_backoff_delay: float = Field(default=1.0, validation_alias="DEFAULT_BACKOFF_DELAY")

    # Scheduler
    scheduler_concurrency: int = Field(default=2, validation_alias="SCHEDULER_CONCURRENCY")
    shutdown_timeout: float = Field(default=30.0, validation_alias="SHUTDOWN_TIMEOUT")

    # Observability
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(default=True, validation_alias="LOG_JSON")
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")


settings = Settings()
