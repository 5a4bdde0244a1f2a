"""Shared builders for workflow definitions used across the test suite."""

from typing import Any, Dict, Optional, Sequence

import pytest

from hubflow.config import EngineConfig
from hubflow.contracts import StepType, WorkflowDefinition, WorkflowStep


def build_step(
    step_id: str,
    dependencies: Sequence[str] = (),
    step_type: StepType = StepType.AI_ACTION,
    config: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> WorkflowStep:
    if config is None:
        if step_type == StepType.AI_ACTION:
            config = {"action_id": step_id}
        elif step_type == StepType.USER_ACTION:
            config = {"action_title": f"Confirm {step_id}"}
        elif step_type == StepType.WAIT:
            config = {"wait_type": "time", "duration_ms": 0}
        else:
            raise ValueError(f"no default config for {step_type}")
    return WorkflowStep(
        id=step_id,
        type=step_type,
        config={"type": step_type.value, **config},
        dependencies=list(dependencies),
        **fields,
    )


def build_definition(
    steps: Sequence[WorkflowStep],
    definition_id: str = "wf",
    entry_step_id: Optional[str] = None,
    **fields: Any,
) -> WorkflowDefinition:
    fields.setdefault("category", "provider")
    return WorkflowDefinition(
        id=definition_id,
        name=fields.pop("name", definition_id.replace("_", " ").title()),
        steps=list(steps),
        entry_step_id=entry_step_id or steps[0].id,
        **fields,
    )


@pytest.fixture
def make_step():
    return build_step


@pytest.fixture
def make_definition():
    return build_definition


@pytest.fixture
def fast_config() -> EngineConfig:
    return EngineConfig(step_timeout_ms=2000, retry_delay_ms=0, max_step_retries=3)
