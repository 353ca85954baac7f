from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_EVENT_QUEUE_SIZE,
    DEFAULT_LIVENESS_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_ITERATIONS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis event relay."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    stream_max_len: int = Field(default=10_000, gt=0)


class EventsConfig(BaseModel):
    """Event relay settings."""

    backend: Literal["none", "inmemory", "redis"] = "none"
    redis: RedisConfig = RedisConfig()
    queue_size: int = Field(default=DEFAULT_EVENT_QUEUE_SIZE, gt=0)


class RetryConfig(BaseModel):
    """Bounded exponential backoff for retryable runner failures."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_BACKOFF, ge=0)
    jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0)


class RunnerConfig(BaseModel):
    """Phase runner supervision settings."""

    liveness_timeout: float = Field(default=DEFAULT_LIVENESS_TIMEOUT, gt=0)


class LoopConfig(BaseModel):
    """Limits for loop phases."""

    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)


class PhaseflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    events: EventsConfig = EventsConfig()
    retry: RetryConfig = RetryConfig()
    runner: RunnerConfig = RunnerConfig()
    loops: LoopConfig = LoopConfig()


def load_config(path: Optional[str] = None) -> PhaseflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PHASEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PHASEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PhaseflowConfig(**data)
    else:
        config = PhaseflowConfig()

    env_db_url = os.getenv("PHASEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
