from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    ANALYSIS_IDLE_TIMEOUT_SECONDS,
    BATCH_IDLE_TIMEOUT_SECONDS,
    MAX_BATCH_ANSWERS,
    MAX_BATCH_ITEMS,
)
from .utils.retry import RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for the Redis state channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class ChannelConfig(BaseModel):
    """State synchronization channel settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class StreamConfig(BaseModel):
    """Progress stream limits and client-side liveness timeouts."""

    batch_idle_timeout: float = BATCH_IDLE_TIMEOUT_SECONDS
    analysis_idle_timeout: float = ANALYSIS_IDLE_TIMEOUT_SECONDS
    max_batch_items: int = MAX_BATCH_ITEMS
    max_batch_answers: int = MAX_BATCH_ANSWERS


class TicketflowConfig(BaseModel):
    """Top-level configuration model."""

    channel: ChannelConfig = ChannelConfig()
    retry: RetryPolicy = RetryPolicy()
    stream: StreamConfig = StreamConfig()
    database_url: Optional[str] = None
    api_url: str = "http://localhost:8000"


def load_config(path: Optional[str] = None) -> TicketflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TICKETFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("TICKETFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TicketflowConfig(**data)
    else:
        config = TicketflowConfig()

    env_db_url = os.getenv("TICKETFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_channel = os.getenv("TICKETFLOW_CHANNEL")
    if env_channel:
        config.channel = ChannelConfig(backend=env_channel.lower(), redis=config.channel.redis)
    return config
