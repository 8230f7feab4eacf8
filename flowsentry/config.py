from __future__ import annotations

import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class MonitoringConfig(BaseModel):
    """Settings for the background monitoring scheduler.

    Frozen so a running scheduler never observes a partially edited value.
    """

    model_config = ConfigDict(frozen=True)

    check_interval_seconds: float = Field(default=300, gt=0)
    initial_delay_seconds: float = Field(default=30, ge=0)
    enable_retry_monitoring: bool = True
    enable_overdue_monitoring: bool = True
    enable_resource_sync: bool = True
    enable_scheduled_import: bool = True
    default_retry_limit: int = Field(default=3, ge=0)
    default_sync_interval_minutes: int = Field(default=60, gt=0)


class DirectoryConfig(BaseModel):
    """Static phone lookups used to resolve escalation recipients."""

    users: Dict[str, str] = Field(default_factory=dict)
    contacts: Dict[str, str] = Field(default_factory=dict)
    groups: Dict[str, List[str]] = Field(default_factory=dict)
    hashtags: Dict[str, List[str]] = Field(default_factory=dict)


class FlowSentryConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    monitoring: MonitoringConfig = MonitoringConfig()
    directory: DirectoryConfig = DirectoryConfig()


def load_config(path: Optional[str] = None) -> FlowSentryConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWSENTRY_CONFIG env
            variable or 'flowsentry.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWSENTRY_CONFIG", "flowsentry.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowSentryConfig(**data)
    else:
        config = FlowSentryConfig()

    env_db_url = os.getenv("FLOWSENTRY_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
