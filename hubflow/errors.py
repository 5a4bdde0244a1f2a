"""Exception taxonomy for the workflow engine."""

from __future__ import annotations

from typing import Any, Optional


class HubflowError(Exception):
    """Base class for all engine errors.

    ``code`` is the stable identifier also used in ``WorkflowError.code`` when
    the condition terminates an instance instead of being raised.
    """

    code = "HUBFLOW_ERROR"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ResourceExhausted(HubflowError):
    """The concurrency bound is saturated."""

    code = "RESOURCE_EXHAUSTED"


class NotFound(HubflowError):
    code = "NOT_FOUND"


class DefinitionNotFound(NotFound):
    def __init__(self, definition_id: str):
        super().__init__(f"Workflow definition not found: {definition_id}")
        self.definition_id = definition_id


class InstanceNotFound(NotFound):
    def __init__(self, instance_id: str):
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class DuplicateDefinition(HubflowError):
    code = "DUPLICATE_DEFINITION"

    def __init__(self, definition_id: str):
        super().__init__(f"Workflow definition already registered: {definition_id}")
        self.definition_id = definition_id


class InvalidDefinition(HubflowError):
    """A definition failed structural validation."""

    code = "INVALID_DEFINITION"

    def __init__(self, definition_id: str, problems: list[str]):
        super().__init__(
            f"Invalid workflow definition {definition_id}: " + "; ".join(problems),
            details={"problems": problems},
        )
        self.definition_id = definition_id
        self.problems = problems


class InvalidStateTransition(HubflowError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, instance_id: str, current: str, requested: str):
        super().__init__(
            f"Illegal transition for {instance_id}: {current} -> {requested}",
            details={"current": current, "requested": requested},
        )
        self.instance_id = instance_id
        self.current = current
        self.requested = requested


class StepNotFound(HubflowError):
    code = "STEP_NOT_FOUND"


class Deadlock(HubflowError):
    code = "DEADLOCK"


class StepTimeout(HubflowError):
    code = "STEP_TIMEOUT"


class StepExecutionError(HubflowError):
    code = "STEP_EXECUTION_ERROR"


class MaxRetriesExceeded(HubflowError):
    code = "MAX_RETRIES_EXCEEDED"


class UnregisteredStepType(HubflowError):
    """No handler is registered for a step type. This is a configuration error."""

    code = "UNREGISTERED_STEP_TYPE"

    def __init__(self, step_type: str):
        super().__init__(f"No handler registered for step type: {step_type}")
        self.step_type = step_type


class EngineNotRunning(HubflowError):
    code = "ENGINE_NOT_RUNNING"


INTERNAL_ERROR = "INTERNAL_ERROR"
