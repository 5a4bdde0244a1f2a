"""Store abstraction for workflow instance persistence."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol

from ..contracts import StepStatus, WorkflowInstance, WorkflowStatus, WorkflowStep


class WorkflowInstanceStore(Protocol):
    """Protocol for workflow instance persistence backends."""

    async def save(self, instance: WorkflowInstance) -> None:
        """Insert or replace the instance and all of its steps."""

    async def load(self, instance_id: str) -> WorkflowInstance:
        """Return the instance or raise ``InstanceNotFound``."""

    async def load_for_user(self, user_id: Optional[str]) -> list[WorkflowInstance]:
        """Return the user's instances, or every instance when ``user_id`` is None."""

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        """Return all instances, optionally filtered by status."""

    async def update_status(self, instance_id: str, status: WorkflowStatus) -> None:
        """Persist a workflow status change."""

    async def update_step_status(
        self, instance_id: str, step_id: str, status: StepStatus
    ) -> None:
        """Persist a step status change without rewriting the instance."""

    async def save_step(self, instance_id: str, step: WorkflowStep) -> None:
        """Persist one step's runtime fields (status, result, error, timestamps)."""

    async def delete(self, instance_id: str) -> None:
        """Remove an instance and its steps."""

    async def delete_older_than(self, max_age: timedelta) -> int:
        """Delete finished instances completed more than ``max_age`` ago."""
