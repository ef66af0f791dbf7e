"""Repository abstraction for workflow snapshot persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        """Insert or replace the stored snapshot of ``workflow``."""

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def find_active(self, subject_id: str) -> WorkflowInstance | None:
        """Return the running or suspended workflow for ``subject_id``, if any."""

    async def list_workflows(self) -> list[WorkflowInstance]:
        """Return all persisted workflows."""
