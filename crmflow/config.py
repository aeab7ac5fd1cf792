from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Domain event transport settings.

    ``consumer`` names this worker's in-flight list; give each worker
    process its own so a restart only recovers its own deliveries.
    """

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "crm.events"
    consumer: str = "default"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Polling intervals, in seconds, for the periodic scheduler."""

    execution_interval: float = 60
    date_trigger_interval: float = 3600


class DispatcherConfig(BaseModel):
    """Retry policy applied around the channel dispatcher."""

    max_attempts: int = 1
    backoff_base: float = 1.5


class CrmFlowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CrmFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CRMFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CRMFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrmFlowConfig(**data)
    else:
        config = CrmFlowConfig()

    env_db_url = os.getenv("CRMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
