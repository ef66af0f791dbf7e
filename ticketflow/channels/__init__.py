"""Publish/subscribe channels for workflow snapshots."""

from __future__ import annotations

from typing import Optional

from ..config import TicketflowConfig, load_config
from .base import BaseStateChannel
from .inmemory import InMemoryStateChannel


def get_channel(config: Optional[TicketflowConfig] = None) -> BaseStateChannel:
    """Channel for ``config.channel``.

    The in-memory channel only reaches observers in this process; use Redis
    when the CLI or another worker has to follow runs.
    """
    settings = (config or load_config()).channel
    if settings.backend == "redis":
        from .redis import RedisStateChannel

        return RedisStateChannel(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
        )
    return InMemoryStateChannel()


__all__ = ["BaseStateChannel", "InMemoryStateChannel", "get_channel"]
