"""Export and import of single workflow instances."""

from __future__ import annotations

from typing import Any, Dict

from ..contracts import WorkflowInstance, utcnow
from .store import WorkflowInstanceStore

EXPORT_FORMAT = "workflow-export-v1"


async def export_instance(store: WorkflowInstanceStore, instance_id: str) -> Dict[str, Any]:
    """Return a JSON-compatible export document for ``instance_id``."""

    instance = await store.load(instance_id)
    return {
        "workflow": instance.model_dump(mode="json"),
        "exported_at": utcnow().isoformat(),
        "format": EXPORT_FORMAT,
    }


async def import_instance(store: WorkflowInstanceStore, data: Dict[str, Any]) -> WorkflowInstance:
    """Validate an export document and save the instance it carries."""

    if data.get("format") != EXPORT_FORMAT:
        raise ValueError(f"Unsupported export format: {data.get('format')!r}")
    if "workflow" not in data:
        raise ValueError("Export document has no 'workflow' entry")
    instance = WorkflowInstance.model_validate(data["workflow"])
    await store.save(instance)
    return instance
