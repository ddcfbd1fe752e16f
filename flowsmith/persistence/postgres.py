"""PostgreSQL implementation of the state store."""

from __future__ import annotations

import asyncpg

from ..contracts import WorkflowInstance
from .repository import StateStore


class PostgresStateStore(StateStore):
    """Persist workflow instances using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS workflow_instances (
                instance_id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save(self, instance: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_instances (instance_id, definition_id, status, data, updated_at)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                ON CONFLICT (instance_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
                """,
                instance.instance_id,
                instance.definition_id,
                instance.status.value,
                instance.to_json(),
                instance.updated_at,
            )
        finally:
            await conn.close()

    async def load(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM workflow_instances WHERE instance_id = $1",
                instance_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowInstance.from_json(row["data"])

    async def list_instances(self) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data::text AS data FROM workflow_instances ORDER BY updated_at"
            )
        finally:
            await conn.close()
        return [WorkflowInstance.from_json(r["data"]) for r in rows]
