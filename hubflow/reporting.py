"""Aggregate statistics over workflow instances."""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any, Dict, Iterable

from .contracts import StepStatus, WorkflowInstance, WorkflowStatus


def instance_statistics(instances: Iterable[WorkflowInstance]) -> Dict[str, Any]:
    """Summarise instances by status and definition.

    ``success_rate`` is the share of finished instances that completed.
    ``step_success_rates`` maps step ids to the share of their finished runs
    (completed or failed) that completed.
    """

    instances = list(instances)
    by_status = Counter(i.status.value for i in instances)
    by_definition = Counter(i.definition_id for i in instances)

    durations = [
        (i.completed_at - i.started_at).total_seconds() / 60
        for i in instances
        if i.status == WorkflowStatus.COMPLETED and i.completed_at is not None
    ]
    finished = [i for i in instances if i.is_terminal]
    completed = by_status.get(WorkflowStatus.COMPLETED.value, 0)

    step_runs: Dict[str, Counter] = defaultdict(Counter)
    for instance in instances:
        for step in instance.steps:
            if step.status in (StepStatus.COMPLETED, StepStatus.FAILED):
                step_runs[step.id][step.status.value] += 1

    return {
        "total": len(instances),
        "by_status": dict(by_status),
        "by_definition": dict(by_definition),
        "average_duration_minutes": (
            round(sum(durations) / len(durations), 2) if durations else 0.0
        ),
        "success_rate": round(completed / len(finished), 4) if finished else 0.0,
        "step_success_rates": {
            step_id: round(runs["completed"] / sum(runs.values()), 4)
            for step_id, runs in sorted(step_runs.items())
        },
    }
