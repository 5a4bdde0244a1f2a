"""In-memory implementation of the workflow instance store."""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from ..contracts import (
    TERMINAL_STATUSES,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from ..errors import InstanceNotFound, StepNotFound
from .models import as_utc
from .store import WorkflowInstanceStore


class InMemoryInstanceStore(WorkflowInstanceStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Instances are copied in and out so
    the store never aliases objects owned by the engine.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}

    def _get(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    # ------------------------------------------------------------------
    async def save(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def load(self, instance_id: str) -> WorkflowInstance:
        return self._get(instance_id).model_copy(deep=True)

    async def load_for_user(self, user_id: Optional[str]) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if user_id is None or i.user_id == user_id
        ]

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if status is None or i.status == status
        ]

    async def update_status(self, instance_id: str, status: WorkflowStatus) -> None:
        instance = self._get(instance_id)
        instance.status = status
        if status == WorkflowStatus.PAUSED:
            instance.paused_at = utcnow()
        elif status in TERMINAL_STATUSES:
            instance.completed_at = utcnow()

    async def update_step_status(
        self, instance_id: str, step_id: str, status: StepStatus
    ) -> None:
        step = self._get(instance_id).get_step(step_id)
        if step is None:
            raise StepNotFound(f"Step not found: {step_id} (instance={instance_id})")
        step.status = status
        if status == StepStatus.IN_PROGRESS:
            step.started_at = utcnow()
        elif status in (StepStatus.COMPLETED, StepStatus.FAILED):
            step.completed_at = utcnow()

    async def save_step(self, instance_id: str, step: WorkflowStep) -> None:
        instance = self._get(instance_id)
        for position, existing in enumerate(instance.steps):
            if existing.id == step.id:
                instance.steps[position] = step.model_copy(deep=True)
                return
        raise StepNotFound(f"Step not found: {step.id} (instance={instance_id})")

    async def delete(self, instance_id: str) -> None:
        self._instances.pop(instance_id, None)

    async def delete_older_than(self, max_age: timedelta) -> int:
        cutoff = utcnow() - max_age
        expired = [
            instance_id
            for instance_id, instance in self._instances.items()
            if instance.completed_at is not None and as_utc(instance.completed_at) < cutoff
        ]
        for instance_id in expired:
            del self._instances[instance_id]
        return len(expired)

    def clear(self) -> None:
        self._instances.clear()
