"""Base interface for workflow state synchronization channels."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import WorkflowInstance


class BaseStateChannel(metaclass=abc.ABCMeta):
    """One-way push of full workflow snapshots to remote observers.

    Subscribers first receive the latest snapshot (if any), then every newer
    one. Snapshots carry a monotonically increasing ``revision``; a subscriber
    never sees a revision lower than one it has already received.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, snapshot: WorkflowInstance) -> None:
        """Publish the current snapshot of a workflow."""
        raise NotImplementedError

    @abc.abstractmethod
    async def latest(self, workflow_id: str) -> Optional[WorkflowInstance]:
        """Return the most recently published snapshot."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, workflow_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowInstance]:
        """Yield snapshots for ``workflow_id``, starting with the latest.

        Args:
            workflow_id: The workflow to observe
            lifespan: Maximum time in seconds to keep the subscription open. If None, runs indefinitely.
        """
        raise NotImplementedError
