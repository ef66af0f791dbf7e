"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowInstance
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow snapshots in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}

    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        self._workflows[workflow.id] = workflow.snapshot()

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.snapshot() if wf else None

    async def find_active(self, subject_id: str) -> WorkflowInstance | None:
        for wf in self._workflows.values():
            if wf.subject_id == subject_id and wf.status.is_active:
                return wf.snapshot()
        return None

    async def list_workflows(self) -> list[WorkflowInstance]:
        return [wf.snapshot() for wf in self._workflows.values()]
