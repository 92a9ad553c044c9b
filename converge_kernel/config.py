"""
Kernel configuration.

Loaded from a YAML file:

    log_level: INFO
    scheduler:
      max_workers: 8
      apply_timeout_seconds: 30
    drift:
      interval_seconds: 180
    source:
      path: ./manifests
      poll_schedule: "*/3 * * * *"
      revision_db: ./revisions.db

The file path comes from the argument or ``CONVERGE_CONFIG``;
``CONVERGE_LOG_LEVEL`` overrides ``log_level``.
"""

import os
from pathlib import Path
from typing import Optional

import pydantic
import yaml
from pydantic import BaseModel

from converge_kernel.errors import ValidationError
from converge_kernel.models.scheduler import DriftConfig, SchedulerConfig, SourceConfig

CONFIG_ENV = "CONVERGE_CONFIG"
LOG_LEVEL_ENV = "CONVERGE_LOG_LEVEL"


class ConfigError(ValidationError):
    """Configuration file missing or invalid."""
    pass


class KernelConfig(BaseModel):
    """Complete kernel configuration."""

    log_level: str = "INFO"
    scheduler: SchedulerConfig = SchedulerConfig()
    drift: DriftConfig = DriftConfig()
    source: SourceConfig = SourceConfig()


def _load_yaml(config_path: Path) -> dict:
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping")
    return data


def load_config(path: Optional[str] = None) -> KernelConfig:
    """Load configuration from ``path`` or ``$CONVERGE_CONFIG``; defaults otherwise."""
    path = path or os.environ.get(CONFIG_ENV)
    data = _load_yaml(Path(path)) if path else {}

    try:
        config = KernelConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    log_level = os.environ.get(LOG_LEVEL_ENV)
    if log_level:
        config.log_level = log_level.upper()
    return config
