"""Mapping from step types to the coroutines that execute them."""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from ..contracts import StepResult, StepType, WorkflowContext, WorkflowStep
from ..errors import UnregisteredStepType

StepHandler = Callable[[WorkflowStep, WorkflowContext], Awaitable[StepResult]]


class StepHandlerRegistry:
    """Dispatch table keyed on ``StepType``.

    Handlers are single-purpose coroutines ``(step, context) -> StepResult``.
    They receive a copy of the step and may only touch ``context``.
    """

    def __init__(self, handlers: Optional[Dict[StepType, StepHandler]] = None) -> None:
        self._handlers: Dict[StepType, StepHandler] = {}
        for step_type, handler in (handlers or {}).items():
            self.register(step_type, handler)

    def register(self, step_type: StepType | str, handler: Optional[StepHandler] = None):
        """Register ``handler`` for ``step_type``.

        Without ``handler`` this returns a decorator::

            @handlers.register(StepType.AI_ACTION)
            async def run(step, ctx): ...
        """

        key = StepType(step_type)
        if handler is None:

            def decorator(fn: StepHandler) -> StepHandler:
                self._handlers[key] = fn
                return fn

            return decorator
        self._handlers[key] = handler
        return handler

    def get(self, step_type: StepType | str) -> StepHandler:
        key = StepType(step_type)
        try:
            return self._handlers[key]
        except KeyError:
            raise UnregisteredStepType(key.value) from None

    def __contains__(self, step_type: object) -> bool:
        try:
            return StepType(step_type) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    def missing(self, step_types: Iterable[StepType]) -> List[StepType]:
        """Return the step types in ``step_types`` that have no handler."""
        return sorted({t for t in step_types if t not in self._handlers}, key=lambda t: t.value)

    def registered_types(self) -> List[StepType]:
        return list(self._handlers)
