"""hubflow: dependency-ordered workflow orchestration with pause, resume and retries."""

from .config import EngineConfig, HubflowConfig, load_config
from .contracts import (
    StepResult,
    StepStatus,
    StepType,
    WorkflowContext,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
)
from .engine import WorkflowEngine
from .events import EventBus
from .handlers import StepHandlerRegistry, build_handler_registry
from .persistence import get_store
from .registry import WorkflowDefinitionRegistry, register_default_workflows

__version__ = "0.1.0"
__all__ = [
    "EngineConfig",
    "EventBus",
    "HubflowConfig",
    "StepHandlerRegistry",
    "StepResult",
    "StepStatus",
    "StepType",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowDefinitionRegistry",
    "WorkflowEngine",
    "WorkflowEvent",
    "WorkflowInstance",
    "WorkflowStatus",
    "WorkflowStep",
    "build_handler_registry",
    "get_store",
    "load_config",
    "register_default_workflows",
]
