from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    EXECUTOR_ACTIVITY_NAME,
    FUNCTION_ID,
    MINUTES_TO_WAIT_AFTER_ERROR,
    MINUTES_TO_WAIT_AFTER_NO_WORK,
    ORCHESTRATOR_NAME,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class PolicyConfig(BaseModel):
    """Backoff policy applied by the perpetual loop."""

    minutes_to_wait_after_no_work: int = MINUTES_TO_WAIT_AFTER_NO_WORK
    minutes_to_wait_after_error: int = MINUTES_TO_WAIT_AFTER_ERROR


class TimerConfig(BaseModel):
    """Durable timer sweeper settings."""

    poll_interval: float = 1.0


class RetryConfig(BaseModel):
    """Retry settings for persistence operations."""

    attempts: int = 5
    base: float = 1.5
    jitter: float = 0.5


class PerennialConfig(BaseModel):
    """Top-level configuration model."""

    instance_id: str = FUNCTION_ID
    orchestration: str = ORCHESTRATOR_NAME
    activity: str = EXECUTOR_ACTIVITY_NAME
    policy: PolicyConfig = PolicyConfig()
    transport: TransportConfig = TransportConfig()
    timers: TimerConfig = TimerConfig()
    retry: RetryConfig = RetryConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> PerennialConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PERENNIAL_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PERENNIAL_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PerennialConfig(**data)
    else:
        config = PerennialConfig()

    env_db_url = os.getenv("PERENNIAL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
