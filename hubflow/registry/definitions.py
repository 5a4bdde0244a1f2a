"""Catalog of workflow definitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping

from ..contracts import WorkflowDefinition
from ..errors import DefinitionNotFound, DuplicateDefinition
from .validation import validate_definition

logger = logging.getLogger(__name__)


def context_matches(required: Mapping[str, Any] | None, context: Mapping[str, Any]) -> bool:
    """Return ``True`` when ``context`` contains every key/value in ``required``.

    Nested mappings are matched recursively, so a requirement only needs to
    name the fields it cares about.
    """

    if not required:
        return True
    for key, expected in required.items():
        if key not in context:
            return False
        actual = context[key]
        if isinstance(expected, Mapping):
            if not isinstance(actual, Mapping) or not context_matches(expected, actual):
                return False
        elif actual != expected:
            return False
    return True


class WorkflowDefinitionRegistry:
    """Holds validated, immutable workflow templates keyed by id.

    Definitions are copied on the way in and on the way out, so neither the
    caller that registered a definition nor a caller that fetched one can
    change what the next ``get`` returns.
    """

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.id in self._definitions:
            raise DuplicateDefinition(definition.id)
        validate_definition(definition)
        self._definitions[definition.id] = definition.model_copy(deep=True)
        logger.debug(f"Registered workflow definition {definition.id}")

    def unregister(self, definition_id: str) -> None:
        if self._definitions.pop(definition_id, None) is None:
            raise DefinitionNotFound(definition_id)

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        return definition.model_copy(deep=True)

    def __contains__(self, definition_id: object) -> bool:
        return definition_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def list(self) -> List[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    def categories(self) -> List[str]:
        return sorted({d.category for d in self._definitions.values()})

    def list_by_category(self, category: str) -> List[WorkflowDefinition]:
        return [d for d in self.list() if d.category == category]

    def list_for_context(self, context: Mapping[str, Any]) -> List[WorkflowDefinition]:
        return [d for d in self.list() if context_matches(d.required_context, context)]

    def suggest(self, context: Mapping[str, Any]) -> List[WorkflowDefinition]:
        """Matching definitions, highest priority first, quickest first on ties."""
        return sorted(
            self.list_for_context(context),
            key=lambda d: (-d.priority, d.estimated_time_minutes),
        )

    def can_automate(self, definition_id: str) -> bool:
        return self.get(definition_id).automation_level in ("semi_auto", "full_auto")

    def statistics(self) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        automation_levels: Dict[str, int] = {}
        total_time = 0
        for definition in self._definitions.values():
            by_category[definition.category] = by_category.get(definition.category, 0) + 1
            automation_levels[definition.automation_level] = (
                automation_levels.get(definition.automation_level, 0) + 1
            )
            total_time += definition.estimated_time_minutes
        count = len(self._definitions)
        return {
            "total_workflows": count,
            "by_category": by_category,
            "automation_levels": automation_levels,
            "average_time_minutes": round(total_time / count) if count else 0,
        }
