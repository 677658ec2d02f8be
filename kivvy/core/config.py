"""
Kivvy Configuration Management

Centralized configuration for the background job system with:
- Environment-based configuration
- Type-safe settings with Pydantic
- Per-queue retry/retention policies
- Per-kind worker concurrency
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for Kivvy."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisConfig(BaseModel):
    """Connection settings for the durable queue store."""
    url: str = "redis://localhost:6379/0"
    prefix: str = "kivvy:jobs:"
    connect_timeout: float = 2.0
    socket_timeout: float = 5.0


class RetryConfig(BaseModel):
    """Default retry policy attached to every task of a queue."""
    max_attempts: int = Field(default=3, ge=1)
    backoff_type: Literal["exponential", "fixed"] = "exponential"
    backoff_ms: int = Field(default=2000, ge=0)


class QueueConfig(BaseModel):
    """Per-queue policy."""
    retain_completed: int = Field(default=50, ge=0)
    retain_failed: int = Field(default=50, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


def _default_queues() -> Dict[str, QueueConfig]:
    return {
        name: QueueConfig()
        for name in ("email", "notification", "payment", "report", "maintenance")
    }


# Payment capture gets the lowest concurrency: stricter consistency requirements.
DEFAULT_CONCURRENCY: Dict[str, int] = {
    "send-email": 5,
    "send-sms": 3,
    "send-push-notification": 10,
    "send-booking-reminder": 5,
    "process-payment": 2,
    "generate-report": 1,
    "cleanup-expired-sessions": 1,
    "sync-external-data": 1,
    "update-activity-stats": 1,
    "process-image-upload": 2,
}


class WorkerConfig(BaseModel):
    """Configuration for worker slots and stall detection."""
    concurrency: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))
    poll_interval: float = 0.5  # seconds an idle slot waits before polling again
    lease_seconds: float = 30.0  # active task is considered stalled after this
    lease_renew_interval: float = 10.0
    stall_check_interval: float = 15.0
    max_stalled_count: int = 1
    shutdown_timeout: float = 30.0

    @field_validator("concurrency")
    @classmethod
    def positive_concurrency(cls, v: Dict[str, int]) -> Dict[str, int]:
        merged = dict(DEFAULT_CONCURRENCY)
        merged.update(v)
        for kind, slots in merged.items():
            if slots < 0:
                raise ValueError(f"concurrency for {kind} must be >= 0")
        return merged


class SchedulerConfig(BaseModel):
    """Configuration for the recurring job scheduler."""
    enabled: bool = True
    check_interval: float = 1.0
    timezone: str = "UTC"  # cron expressions are evaluated in this zone
    register_defaults: bool = True
    stats_cron: str = "0 2 * * *"  # daily at 02:00
    cleanup_cron: str = "0 3 * * 0"  # Sundays at 03:00
    reminder_cron: str = "0 9 * * *"
    dedup_ttl_seconds: int = 86400


class DeliveryConfig(BaseModel):
    """Email/SMS/push transport settings. Unset hosts fall back to log-only delivery."""
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "Kivvy <noreply@kivvy.pt>"
    sms_api_url: Optional[str] = None
    sms_api_key: Optional[str] = None
    sms_from: str = "Kivvy"
    sms_default_country_code: str = "351"
    push_api_url: Optional[str] = None
    push_api_key: Optional[str] = None
    timeout: float = 15.0


class PaymentConfig(BaseModel):
    """Payment gateway settings."""
    stripe_secret_key: Optional[str] = None
    currency: str = "eur"
    request_timeout: float = 30.0


class MediaConfig(BaseModel):
    """Image host settings for uploaded activity pictures."""
    upload_url: Optional[str] = None
    upload_preset: Optional[str] = None
    public_base_url: str = "/uploads"
    timeout: float = 60.0


class AlertConfig(BaseModel):
    """Operator alerting for failures with financial impact."""
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0
    log_level: Literal["warning", "error", "critical"] = "error"


class KivvyConfig(BaseSettings):
    """
    Main Kivvy jobs configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with KIVVY_ (e.g., KIVVY_LOG_LEVEL=DEBUG,
    KIVVY_REDIS__URL=redis://cache:6379/1).
    """

    instance_id: str = Field(default="kivvy-worker")
    environment: Literal["development", "staging", "production"] = "development"
    log_level: LogLevel = LogLevel.INFO
    log_format: Literal["json", "text"] = "json"

    # "auto" probes Redis and degrades to memory, "redis" requires it
    queue_backend: Literal["auto", "redis", "memory"] = "auto"

    redis: RedisConfig = Field(default_factory=RedisConfig)
    queues: Dict[str, QueueConfig] = Field(default_factory=_default_queues)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)

    model_config = {
        "env_prefix": "KIVVY_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("queues")
    @classmethod
    def fill_missing_queues(cls, v: Dict[str, QueueConfig]) -> Dict[str, QueueConfig]:
        """Every known queue gets a policy even when only some are overridden."""
        merged = _default_queues()
        merged.update(v)
        return merged

    def queue_policy(self, queue_name: str) -> QueueConfig:
        return self.queues.get(queue_name) or QueueConfig()

    @classmethod
    def from_file(cls, config_path: Path) -> "KivvyConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(), f, indent=2, default=str)


# Global configuration instance (lazy loaded)
_config: Optional[KivvyConfig] = None


def get_config() -> KivvyConfig:
    """Get the global Kivvy configuration instance."""
    global _config
    if _config is None:
        _config = KivvyConfig()
    return _config


def set_config(config: KivvyConfig) -> None:
    """Set the global Kivvy configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
