"""Load workflow definitions from YAML catalogs."""

from __future__ import annotations

from pathlib import Path
from typing import List

import yaml

from ..contracts import WorkflowDefinition
from .definitions import WorkflowDefinitionRegistry

DEFAULT_CATALOG = Path(__file__).with_name("default_workflows.yaml")


def parse_definitions(text: str) -> List[WorkflowDefinition]:
    """Parse a YAML document holding a ``workflows`` list (or a bare list)."""

    data = yaml.safe_load(text) or []
    if isinstance(data, dict):
        data = data.get("workflows", [])
    if not isinstance(data, list):
        raise ValueError("Workflow catalog must be a list or contain a 'workflows' list")
    return [WorkflowDefinition.model_validate(item) for item in data]


def load_definitions(path: str | Path) -> List[WorkflowDefinition]:
    return parse_definitions(Path(path).read_text(encoding="utf-8"))


def register_catalog(registry: WorkflowDefinitionRegistry, path: str | Path) -> int:
    """Register every definition in ``path`` and return how many were added."""

    definitions = load_definitions(path)
    for definition in definitions:
        registry.register(definition)
    return len(definitions)


def register_default_workflows(registry: WorkflowDefinitionRegistry) -> int:
    """Install the built-in provider, deliverability and document workflows."""
    return register_catalog(registry, DEFAULT_CATALOG)
