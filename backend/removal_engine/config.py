import json
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database Configuration
    database_url: str

    # Redis/Celery Configuration
    redis_url: str = "redis://localhost:6379/0"

    # Shared secrets
    cron_secret: str
    operator_api_key: str | None = None
    email_webhook_secret: str | None = None

    # CORS Configuration
    cors_origins: list[str] = ["http://localhost:3000"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from string (JSON array or comma-separated) or list."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Application Settings
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Trigger throttling (per caller)
    task_trigger_rate_limit: int = 12
    task_trigger_rate_window_seconds: int = 60 * 60

    # Job execution budget
    job_max_duration_seconds: int = 300
    job_safety_buffer_seconds: int = 60
    job_lock_lease_seconds: int = 10 * 60
    process_batch_size: int = 150
    retry_batch_size: int = 50
    verify_batch_size: int = 100
    execution_log_retention_days: int = 30

    # Per-broker send limits
    broker_daily_cap: int = 25
    broker_min_spacing_minutes: int = 15

    # Retry policy
    max_removal_attempts: int = 3
    failed_state_after_attempts: int = 2
    retry_backoff_base_minutes: int = 60
    retry_backoff_max_minutes: int = 24 * 60
    retry_backoff_risk_multipliers: dict[str, float] = {"LOW": 1.0, "MEDIUM": 1.5, "HIGH": 2.0}

    # Broker intelligence
    intelligence_window_days: int = 30
    intelligence_max_observations: int = 200
    intelligence_min_observations: int = 5
    risk_low_min_success_rate: float = 80.0
    risk_medium_min_success_rate: float = 50.0
    low_success_rate_threshold: float = 50.0
    low_success_extra_verify_days: int = 2
    default_verification_days: int = 7

    # Anomaly detection
    anomaly_window_hours: int = 24
    anomaly_baseline_days: int = 7
    anomaly_min_samples: int = 10
    anomaly_default_baseline_failure_rate: float = 0.1
    anomaly_warning_z: float = 2.0
    anomaly_critical_z: float = 3.0
    anomaly_critical_min_delta: float = 0.2
    circuit_breaker_batch_multiplier: float = 0.5

    # Email delivery
    daily_email_limit: int = 90
    transient_bounce_suppress_threshold: int = 3
    removal_reply_to: str = "privacy-requests@localhost"
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    email_from: str = "Removal Requests <no-reply@localhost>"

    @field_validator(
        "job_max_duration_seconds",
        "broker_daily_cap",
        "max_removal_attempts",
        "failed_state_after_attempts",
        "retry_backoff_base_minutes",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def failed_state_within_ceiling(self) -> "Settings":
        if self.failed_state_after_attempts > self.max_removal_attempts:
            raise ValueError("failed_state_after_attempts cannot exceed max_removal_attempts")
        return self

    model_config = SettingsConfigDict(
        env_file=[
            Path(__file__).resolve().parents[2] / ".env",
            ".env",
        ],
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
