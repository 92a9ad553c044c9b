"""Scheduler, drift detector and source configuration."""

from typing import Optional

from pydantic import BaseModel, Field


class SchedulerConfig(BaseModel):
    """Configuration for the Reconciliation Scheduler."""

    heartbeat_interval_seconds: float = 5.0
    max_workers: int = Field(default=8, ge=1)
    apply_timeout_seconds: float = 30.0
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 300.0
    backoff_jitter: float = Field(default=0.2, ge=0, le=1)
    max_apply_attempts: int = Field(default=5, ge=1)
    max_delete_attempts: int = Field(default=5, ge=1)
    requeue_interval_seconds: float = 10.0
    readiness_poll_seconds: float = 5.0


class DriftConfig(BaseModel):
    """Configuration for the Drift Detector."""

    interval_seconds: float = 180.0


class SourceConfig(BaseModel):
    """Where desired state comes from."""

    path: Optional[str] = None
    poll_schedule: str = "*/3 * * * *"      # Cron expression
    revision_db: str = ":memory:"
