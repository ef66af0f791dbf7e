"""In-process state channel."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional

from ..contracts import WorkflowInstance
from .base import BaseStateChannel


class InMemoryStateChannel(BaseStateChannel):
    """Fan snapshots out to subscribers in the same event loop."""

    def __init__(self) -> None:
        self._latest: Dict[str, WorkflowInstance] = {}
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    async def publish(self, snapshot: WorkflowInstance) -> None:
        current = self._latest.get(snapshot.id)
        if current is not None and current.revision > snapshot.revision:
            return
        snapshot = snapshot.snapshot()
        self._latest[snapshot.id] = snapshot
        for queue in self._subscribers[snapshot.id]:
            queue.put_nowait(snapshot)

    async def latest(self, workflow_id: str) -> Optional[WorkflowInstance]:
        snapshot = self._latest.get(workflow_id)
        return snapshot.snapshot() if snapshot else None

    def subscriber_count(self, workflow_id: str) -> int:
        return len(self._subscribers.get(workflow_id, []))

    async def subscribe(
        self, workflow_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowInstance]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[workflow_id].append(queue)
        last_revision = -1
        try:
            initial = self._latest.get(workflow_id)
            if initial is not None:
                last_revision = initial.revision
                yield initial.snapshot()

            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                if snapshot.revision <= last_revision:
                    continue
                last_revision = snapshot.revision
                yield snapshot.snapshot()
        finally:
            self._subscribers[workflow_id].remove(queue)
