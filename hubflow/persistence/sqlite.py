"""SQLite implementation of the workflow instance store."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

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
    iso,
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


class SQLiteInstanceStore(WorkflowInstanceStore):
    """Persist workflow instances using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                user_id TEXT,
                status TEXT NOT NULL,
                current_step_id TEXT NOT NULL,
                body TEXT NOT NULL,
                started_at TEXT,
                paused_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                status TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                result TEXT,
                error TEXT,
                template TEXT NOT NULL,
                PRIMARY KEY (instance_id, step_id)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_instances_user ON workflow_instances (user_id)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _write_instance(self, instance: WorkflowInstance) -> None:
        with self._conn:
            self._conn.execute(
                f"""
                INSERT INTO workflow_instances ({_INSTANCE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    definition_id = excluded.definition_id,
                    user_id = excluded.user_id,
                    status = excluded.status,
                    current_step_id = excluded.current_step_id,
                    body = excluded.body,
                    started_at = excluded.started_at,
                    paused_at = excluded.paused_at,
                    completed_at = excluded.completed_at
                """,
                (
                    instance.id,
                    instance.definition_id,
                    instance.user_id,
                    instance.status.value,
                    instance.current_step_id,
                    instance_body(instance),
                    iso(instance.started_at),
                    iso(instance.paused_at),
                    iso(instance.completed_at),
                ),
            )
            self._conn.execute(
                "DELETE FROM workflow_steps WHERE instance_id = ?", (instance.id,)
            )
            self._conn.executemany(
                f"""
                INSERT INTO workflow_steps (instance_id, position, {_STEP_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        instance.id,
                        position,
                        step.id,
                        step.status.value,
                        step.retry_count,
                        iso(step.started_at),
                        iso(step.completed_at),
                        step_result_json(step),
                        step_error_json(step),
                        step_template(step),
                    )
                    for position, step in enumerate(instance.steps)
                ],
            )

    def _read_instance(self, row: sqlite3.Row) -> WorkflowInstance:
        step_rows = self._fetchall(
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE instance_id = ? ORDER BY position",
            row["id"],
        )
        return instance_from_rows(row, step_rows)

    def _read_many(self, query: str, *params: Any) -> list[WorkflowInstance]:
        return [self._read_instance(row) for row in self._fetchall(query, *params)]

    def _delete_instances(self, instance_ids: list[str]) -> None:
        with self._conn:
            self._conn.executemany(
                "DELETE FROM workflow_steps WHERE instance_id = ?",
                [(i,) for i in instance_ids],
            )
            self._conn.executemany(
                "DELETE FROM workflow_instances WHERE id = ?",
                [(i,) for i in instance_ids],
            )

    # ------------------------------------------------------------------
    # Store API
    async def save(self, instance: WorkflowInstance) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_instance, instance)

    async def load(self, instance_id: str) -> WorkflowInstance:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
                instance_id,
            )
            if not row:
                raise InstanceNotFound(instance_id)
            return await asyncio.to_thread(self._read_instance, row)

    async def load_for_user(self, user_id: Optional[str]) -> list[WorkflowInstance]:
        async with self._lock:
            if user_id is None:
                return await asyncio.to_thread(
                    self._read_many,
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at",
                )
            return await asyncio.to_thread(
                self._read_many,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE user_id = ? ORDER BY started_at",
                user_id,
            )

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        async with self._lock:
            if status is None:
                return await asyncio.to_thread(
                    self._read_many,
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at",
                )
            return await asyncio.to_thread(
                self._read_many,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = ? ORDER BY started_at",
                status.value,
            )

    async def update_status(self, instance_id: str, status: WorkflowStatus) -> None:
        now = iso(utcnow())
        paused_at = now if status == WorkflowStatus.PAUSED else None
        completed_at = now if status in TERMINAL_STATUSES else None
        async with self._lock:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_instances
                SET status = ?,
                    paused_at = COALESCE(?, paused_at),
                    completed_at = COALESCE(?, completed_at)
                WHERE id = ?
                """,
                status.value,
                paused_at,
                completed_at,
                instance_id,
            )
        if not updated:
            raise InstanceNotFound(instance_id)

    async def update_step_status(
        self, instance_id: str, step_id: str, status: StepStatus
    ) -> None:
        now = iso(utcnow())
        started_at = now if status == StepStatus.IN_PROGRESS else None
        completed_at = (
            now if status in (StepStatus.COMPLETED, StepStatus.FAILED) else None
        )
        async with self._lock:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_steps
                SET status = ?,
                    started_at = COALESCE(?, started_at),
                    completed_at = COALESCE(?, completed_at)
                WHERE instance_id = ? AND step_id = ?
                """,
                status.value,
                started_at,
                completed_at,
                instance_id,
                step_id,
            )
        if not updated:
            raise StepNotFound(f"Step not found: {step_id} (instance={instance_id})")

    async def save_step(self, instance_id: str, step: WorkflowStep) -> None:
        async with self._lock:
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_steps
                SET status = ?, retry_count = ?, started_at = ?, completed_at = ?,
                    result = ?, error = ?
                WHERE instance_id = ? AND step_id = ?
                """,
                step.status.value,
                step.retry_count,
                iso(step.started_at),
                iso(step.completed_at),
                step_result_json(step),
                step_error_json(step),
                instance_id,
                step.id,
            )
        if not updated:
            raise StepNotFound(f"Step not found: {step.id} (instance={instance_id})")

    async def delete(self, instance_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_instances, [instance_id])

    async def delete_older_than(self, max_age: timedelta) -> int:
        cutoff = iso(utcnow() - max_age)
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id FROM workflow_instances WHERE completed_at IS NOT NULL AND completed_at < ?",
                cutoff,
            )
            expired = [row["id"] for row in rows]
            if expired:
                await asyncio.to_thread(self._delete_instances, expired)
        return len(expired)
