"""Workflow definition catalog and validation."""

from __future__ import annotations

from .catalog import (
    DEFAULT_CATALOG,
    load_definitions,
    parse_definitions,
    register_catalog,
    register_default_workflows,
)
from .definitions import WorkflowDefinitionRegistry, context_matches
from .validation import definition_problems, validate_definition

__all__ = [
    "DEFAULT_CATALOG",
    "WorkflowDefinitionRegistry",
    "context_matches",
    "definition_problems",
    "load_definitions",
    "parse_definitions",
    "register_catalog",
    "register_default_workflows",
    "validate_definition",
]
