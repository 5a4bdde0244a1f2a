"""Synchronous fan-out of workflow lifecycle events."""

from __future__ import annotations

import logging
from typing import Callable, List

from .contracts import WorkflowEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[WorkflowEvent], None]


class EventBus:
    """Deliver events to subscribers in emission order.

    A listener that raises is logged and skipped; remaining listeners still
    receive the event.
    """

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: WorkflowEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Event listener failed for {event.type.value} "
                    f"(instance={event.workflow_instance_id})"
                )

    def __len__(self) -> int:
        return len(self._listeners)
