"""Row shapes shared by the durable workflow stores.

An instance is stored as one ``workflow_instances`` row plus one
``workflow_steps`` row per step, so a single step can be updated without
rewriting the whole instance.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from ..contracts import StepError, StepResult, WorkflowInstance, WorkflowStep

STEP_TEMPLATE_FIELDS = {
    "id",
    "type",
    "title",
    "description",
    "config",
    "dependencies",
    "timeout",
    "max_retries",
    "metadata",
}
INSTANCE_BODY_FIELDS = {
    "context",
    "execution_order",
    "result",
    "error",
    "metadata",
    "persistent",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


def dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def instance_body(instance: WorkflowInstance) -> str:
    return json.dumps(instance.model_dump(mode="json", include=INSTANCE_BODY_FIELDS))


def step_template(step: WorkflowStep) -> str:
    return json.dumps(step.model_dump(mode="json", include=STEP_TEMPLATE_FIELDS))


def step_result_json(step: WorkflowStep) -> Optional[str]:
    return dump_json(step.result.model_dump(mode="json") if step.result else None)


def step_error_json(step: WorkflowStep) -> Optional[str]:
    return dump_json(step.error.model_dump(mode="json") if step.error else None)


def step_from_row(row: Mapping[str, Any]) -> WorkflowStep:
    data = load_json(row["template"])
    result = load_json(row["result"])
    error = load_json(row["error"])
    return WorkflowStep.model_validate(
        {
            **data,
            "status": row["status"],
            "retry_count": row["retry_count"],
            "started_at": parse_ts(row["started_at"]),
            "completed_at": parse_ts(row["completed_at"]),
            "result": StepResult.model_validate(result) if result else None,
            "error": StepError.model_validate(error) if error else None,
        }
    )


def instance_from_rows(
    row: Mapping[str, Any], step_rows: Sequence[Mapping[str, Any]]
) -> WorkflowInstance:
    body = load_json(row["body"]) or {}
    return WorkflowInstance.model_validate(
        {
            **body,
            "id": row["id"],
            "definition_id": row["definition_id"],
            "user_id": row["user_id"],
            "status": row["status"],
            "current_step_id": row["current_step_id"],
            "started_at": parse_ts(row["started_at"]),
            "paused_at": parse_ts(row["paused_at"]),
            "completed_at": parse_ts(row["completed_at"]),
            "steps": [step_from_row(r) for r in step_rows],
        }
    )
