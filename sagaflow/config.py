from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_EVENT_HISTORY,
    DEFAULT_MAX_CATCH_UP_FIRES,
    DEFAULT_STEP_TIMEOUT,
    DEFAULT_TICK_INTERVAL,
)
from .contracts import CatchUpPolicy, RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "sagaflow"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineSettings(BaseModel):
    """Execution engine tuning."""

    max_concurrent_steps: Optional[int] = Field(default=None, ge=1)
    default_step_timeout: Optional[float] = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    default_retry: RetryPolicy = RetryPolicy()
    # extra time after a step's timeout before a running step counts as lost
    interrupted_step_grace: float = Field(default=30.0, ge=0)
    persistence_retry_delay: float = Field(default=1.0, ge=0)
    persistence_max_retries: int = Field(default=5, ge=0)
    event_history_limit: int = Field(default=DEFAULT_EVENT_HISTORY, ge=0)


class SchedulerSettings(BaseModel):
    """Trigger dispatcher settings."""

    tick_interval: float = Field(default=DEFAULT_TICK_INTERVAL, gt=0)
    default_catch_up_policy: CatchUpPolicy = CatchUpPolicy.SKIP
    catch_up_window: Optional[float] = Field(default=None, gt=0)
    max_catch_up_fires: int = Field(default=DEFAULT_MAX_CATCH_UP_FIRES, ge=1)


class SagaflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineSettings = EngineSettings()
    scheduler: SchedulerSettings = SchedulerSettings()


def load_config(path: Optional[str] = None) -> SagaflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGAFLOW_CONFIG env
            variable or 'sagaflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGAFLOW_CONFIG", "sagaflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagaflowConfig(**data)
    else:
        config = SagaflowConfig()

    env_db_url = os.getenv("SAGAFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("SAGAFLOW_TRANSPORT")
    if env_transport:
        config.transport = TransportConfig(
            **{**config.transport.model_dump(), "backend": env_transport}
        )
    return config
