"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncpg

from ..contracts import WorkflowInstance, WorkflowStatus
from .repository import WorkflowRepository

_ACTIVE_STATUSES = [s.value for s in WorkflowStatus if s.is_active]


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow snapshots using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                document JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_subject ON workflows (subject_id, status)"
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, subject_id, status, revision, document, updated_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    revision = EXCLUDED.revision,
                    document = EXCLUDED.document,
                    updated_at = EXCLUDED.updated_at
                WHERE EXCLUDED.revision >= workflows.revision
                """,
                workflow.id,
                workflow.subject_id,
                workflow.status.value,
                workflow.revision,
                workflow.to_json(),
                workflow.updated_at,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document::text AS document FROM workflows WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowInstance.from_json(row["document"])

    async def find_active(self, subject_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT document::text AS document FROM workflows
                WHERE subject_id = $1 AND status = ANY($2::text[])
                ORDER BY updated_at DESC LIMIT 1
                """,
                subject_id,
                _ACTIVE_STATUSES,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowInstance.from_json(row["document"])

    async def list_workflows(self) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document::text AS document FROM workflows ORDER BY updated_at"
            )
        finally:
            await conn.close()
        return [WorkflowInstance.from_json(r["document"]) for r in rows]
