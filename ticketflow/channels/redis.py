"""Redis state channel for cross-process observers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError as PydanticValidationError

from ..contracts import WorkflowInstance
from .base import BaseStateChannel

logger = logging.getLogger(__name__)


class RedisStateChannel(BaseStateChannel):
    """Keep the latest snapshot under a key and broadcast updates via pub/sub."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        if redis is None and client is None:
            raise ImportError("redis package is required for RedisStateChannel")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client

    @staticmethod
    def _latest_key(workflow_id: str) -> str:
        return f"ticketflow:workflow:{workflow_id}:latest"

    @staticmethod
    def _topic(workflow_id: str) -> str:
        return f"ticketflow:workflow:{workflow_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, snapshot: WorkflowInstance) -> None:
        if not self._redis:
            await self.connect()

        payload = snapshot.to_json()
        await self._redis.set(self._latest_key(snapshot.id), payload)
        await self._redis.publish(self._topic(snapshot.id), payload)

    async def latest(self, workflow_id: str) -> Optional[WorkflowInstance]:
        if not self._redis:
            await self.connect()

        payload = await self._redis.get(self._latest_key(workflow_id))
        if payload is None:
            return None
        return WorkflowInstance.from_json(payload)

    async def subscribe(
        self, workflow_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowInstance]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._topic(workflow_id))
        start_time = asyncio.get_event_loop().time() if lifespan else None
        last_revision = -1
        try:
            initial = await self.latest(workflow_id)
            if initial is not None:
                last_revision = initial.revision
                yield initial

            while True:
                if lifespan and start_time:
                    elapsed = asyncio.get_event_loop().time() - start_time
                    if elapsed >= lifespan:
                        break

                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if not message:
                    continue
                try:
                    snapshot = WorkflowInstance.from_json(message["data"])
                except PydanticValidationError as e:
                    logger.warning(f"Skipping malformed snapshot for {workflow_id}: {e}")
                    continue
                if snapshot.revision <= last_revision:
                    continue
                last_revision = snapshot.revision
                yield snapshot
        finally:
            await pubsub.unsubscribe(self._topic(workflow_id))
            await pubsub.aclose()
