"""Workflow and step state machines."""

from __future__ import annotations

from .contracts import StepStatus, WorkflowStatus
from .errors import InvalidStateTransition

WORKFLOW_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE},
    WorkflowStatus.ACTIVE: {
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.CANCELLED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}

STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS, StepStatus.SKIPPED},
    StepStatus.IN_PROGRESS: {
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.PAUSED,
        StepStatus.SKIPPED,
    },
    # failed -> pending is the retry path only
    StepStatus.FAILED: {StepStatus.PENDING},
    StepStatus.PAUSED: {StepStatus.PENDING, StepStatus.COMPLETED, StepStatus.SKIPPED},
    StepStatus.COMPLETED: set(),
    StepStatus.SKIPPED: set(),
}


class IllegalStepTransition(ValueError):
    pass


def check_workflow_transition(
    instance_id: str, current: WorkflowStatus, to: WorkflowStatus
) -> None:
    if to not in WORKFLOW_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(instance_id, current.value, to.value)


def check_step_transition(step_id: str, current: StepStatus, to: StepStatus) -> None:
    if to not in STEP_TRANSITIONS.get(current, set()):
        raise IllegalStepTransition(
            f"Illegal step transition for {step_id}: {current.value} -> {to.value}"
        )
