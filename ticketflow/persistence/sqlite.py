"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from ..contracts import WorkflowInstance, WorkflowStatus
from .repository import WorkflowRepository

_ACTIVE_STATUSES = tuple(s.value for s in WorkflowStatus if s.is_active)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow snapshots using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                document TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_subject ON workflows (subject_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        # Older revisions never overwrite newer ones.
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, subject_id, status, revision, document, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                revision = excluded.revision,
                document = excluded.document,
                updated_at = excluded.updated_at
            WHERE excluded.revision >= workflows.revision
            """,
            workflow.id,
            workflow.subject_id,
            workflow.status.value,
            workflow.revision,
            workflow.to_json(),
            workflow.updated_at.isoformat(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            return None
        return WorkflowInstance.from_json(row["document"])

    async def find_active(self, subject_id: str) -> WorkflowInstance | None:
        placeholders = ", ".join("?" for _ in _ACTIVE_STATUSES)
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT document FROM workflows WHERE subject_id = ? AND status IN ({placeholders}) "
            "ORDER BY updated_at DESC LIMIT 1",
            subject_id,
            *_ACTIVE_STATUSES,
        )
        if not row:
            return None
        return WorkflowInstance.from_json(row["document"])

    async def list_workflows(self) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM workflows ORDER BY updated_at"
        )
        return [WorkflowInstance.from_json(row["document"]) for row in rows]
