"""PostgreSQL implementation of the workflow instance store."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import asyncpg

from ..contracts import (
    TERMINAL_STATUSES,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from ..errors import InstanceNotFound, StepNotFound
from .models import (
    instance_body,
    instance_from_rows,
    step_error_json,
    step_result_json,
    step_template,
)
from .store import WorkflowInstanceStore

_INSTANCE_COLUMNS = (
    "id, definition_id, user_id, status, current_step_id, body, "
    "started_at, paused_at, completed_at"
)
_STEP_COLUMNS = (
    "step_id, status, retry_count, started_at, completed_at, result, error, template"
)


def _rowcount(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresInstanceStore(WorkflowInstanceStore):
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
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                user_id TEXT,
                status TEXT NOT NULL,
                current_step_id TEXT NOT NULL,
                body JSONB NOT NULL,
                started_at TIMESTAMPTZ,
                paused_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                status TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                result JSONB,
                error JSONB,
                template JSONB NOT NULL,
                PRIMARY KEY (instance_id, step_id)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_instances_user ON workflow_instances (user_id)"
        )

    async def _read_instance(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> WorkflowInstance:
        step_rows = await conn.fetch(
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE instance_id = $1 ORDER BY position",
            row["id"],
        )
        return instance_from_rows(row, step_rows)

    async def _read_many(self, query: str, *params: Any) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
            return [await self._read_instance(conn, row) for row in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save(self, instance: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO workflow_instances ({_INSTANCE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (id) DO UPDATE SET
                        definition_id = EXCLUDED.definition_id,
                        user_id = EXCLUDED.user_id,
                        status = EXCLUDED.status,
                        current_step_id = EXCLUDED.current_step_id,
                        body = EXCLUDED.body,
                        started_at = EXCLUDED.started_at,
                        paused_at = EXCLUDED.paused_at,
                        completed_at = EXCLUDED.completed_at
                    """,
                    instance.id,
                    instance.definition_id,
                    instance.user_id,
                    instance.status.value,
                    instance.current_step_id,
                    instance_body(instance),
                    instance.started_at,
                    instance.paused_at,
                    instance.completed_at,
                )
                await conn.execute(
                    "DELETE FROM workflow_steps WHERE instance_id = $1", instance.id
                )
                await conn.executemany(
                    f"""
                    INSERT INTO workflow_steps (instance_id, position, {_STEP_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    [
                        (
                            instance.id,
                            position,
                            step.id,
                            step.status.value,
                            step.retry_count,
                            step.started_at,
                            step.completed_at,
                            step_result_json(step),
                            step_error_json(step),
                            step_template(step),
                        )
                        for position, step in enumerate(instance.steps)
                    ],
                )
        finally:
            await conn.close()

    async def load(self, instance_id: str) -> WorkflowInstance:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1",
                instance_id,
            )
            if not row:
                raise InstanceNotFound(instance_id)
            return await self._read_instance(conn, row)
        finally:
            await conn.close()

    async def load_for_user(self, user_id: Optional[str]) -> list[WorkflowInstance]:
        if user_id is None:
            return await self._read_many(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at"
            )
        return await self._read_many(
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE user_id = $1 ORDER BY started_at",
            user_id,
        )

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        if status is None:
            return await self._read_many(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at"
            )
        return await self._read_many(
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = $1 ORDER BY started_at",
            status.value,
        )

    async def update_status(self, instance_id: str, status: WorkflowStatus) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflow_instances
                SET status = $1,
                    paused_at = COALESCE($2, paused_at),
                    completed_at = COALESCE($3, completed_at)
                WHERE id = $4
                """,
                status.value,
                now if status == WorkflowStatus.PAUSED else None,
                now if status in TERMINAL_STATUSES else None,
                instance_id,
            )
        finally:
            await conn.close()
        if not _rowcount(result):
            raise InstanceNotFound(instance_id)

    async def update_step_status(
        self, instance_id: str, step_id: str, status: StepStatus
    ) -> None:
        now = utcnow()
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflow_steps
                SET status = $1,
                    started_at = COALESCE($2, started_at),
                    completed_at = COALESCE($3, completed_at)
                WHERE instance_id = $4 AND step_id = $5
                """,
                status.value,
                now if status == StepStatus.IN_PROGRESS else None,
                now if status in (StepStatus.COMPLETED, StepStatus.FAILED) else None,
                instance_id,
                step_id,
            )
        finally:
            await conn.close()
        if not _rowcount(result):
            raise StepNotFound(f"Step not found: {step_id} (instance={instance_id})")

    async def save_step(self, instance_id: str, step: WorkflowStep) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE workflow_steps
                SET status = $1, retry_count = $2, started_at = $3, completed_at = $4,
                    result = $5, error = $6
                WHERE instance_id = $7 AND step_id = $8
                """,
                step.status.value,
                step.retry_count,
                step.started_at,
                step.completed_at,
                step_result_json(step),
                step_error_json(step),
                instance_id,
                step.id,
            )
        finally:
            await conn.close()
        if not _rowcount(result):
            raise StepNotFound(f"Step not found: {step.id} (instance={instance_id})")

    async def delete(self, instance_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM workflow_steps WHERE instance_id = $1", instance_id
                )
                await conn.execute(
                    "DELETE FROM workflow_instances WHERE id = $1", instance_id
                )
        finally:
            await conn.close()

    async def delete_older_than(self, max_age: timedelta) -> int:
        cutoff = utcnow() - max_age
        conn = await self._connect()
        try:
            async with conn.transaction():
                rows = await conn.fetch(
                    "DELETE FROM workflow_instances WHERE completed_at IS NOT NULL AND completed_at < $1 RETURNING id",
                    cutoff,
                )
                expired = [row["id"] for row in rows]
                if expired:
                    await conn.execute(
                        "DELETE FROM workflow_steps WHERE instance_id = ANY($1::text[])",
                        expired,
                    )
        finally:
            await conn.close()
        return len(expired)
