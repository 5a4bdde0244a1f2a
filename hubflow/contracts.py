"""Core data contracts for hubflow workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_instance_id() -> str:
    return f"wf-{uuid.uuid4().hex}"


class StepType(str, Enum):
    AI_ACTION = "ai_action"
    USER_ACTION = "user_action"
    SMART_SHARE = "smart_share"
    PROVIDER_VERIFICATION = "provider_verification"
    DELIVERABILITY_FIX = "deliverability_fix"
    DOCUMENT_GENERATION = "document_generation"
    EMAIL_SEND = "email_send"
    WAIT = "wait"
    CONTEXT_CHECK = "context_check"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)

Operator = Literal["equals", "not_equals", "contains", "greater_than", "less_than"]


# ----------------------------------------------------------------------
# Step configuration: one model per step type, discriminated on ``type``.


class AIActionConfig(BaseModel):
    type: Literal["ai_action"] = "ai_action"
    action_id: str
    params: Dict[str, Any] = Field(default_factory=dict)
    expected_result: Optional[str] = None


class ActionOption(BaseModel):
    label: str
    value: str
    description: Optional[str] = None


class InputValidation(BaseModel):
    required: bool = False
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None


class UserActionConfig(BaseModel):
    type: Literal["user_action"] = "user_action"
    action_title: str
    action_description: str = ""
    action_type: Literal["button", "form", "choice", "confirmation"] = "confirmation"
    options: List[ActionOption] = Field(default_factory=list)
    default_value: Any = None
    validation: Optional[InputValidation] = None


class SmartShareConfig(BaseModel):
    type: Literal["smart_share"] = "smart_share"
    look_for: Literal[
        "verification_code", "api_key", "dkim_spf_instructions", "provider_settings"
    ]
    subject_pattern: Optional[str] = None
    sender_pattern: Optional[str] = None
    extraction_pattern: Optional[str] = None
    on_extract: Literal["apply_to_provider", "store_in_settings", "display_to_user"] = (
        "display_to_user"
    )
    timeout_ms: int = 60000


class ProviderVerificationConfig(BaseModel):
    type: Literal["provider_verification"] = "provider_verification"
    provider_id: str
    verification_type: Literal[
        "connection_test", "credentials_check", "app_password", "oauth"
    ] = "connection_test"
    expected_result: Literal["connected", "authenticated", "verified"] = "connected"
    retry_delay_ms: int = 5000


class DeliverabilityFixConfig(BaseModel):
    type: Literal["deliverability_fix"] = "deliverability_fix"
    issue: Literal["dkim", "spf", "dmarc", "spam_score", "image_ratio", "unsafe_patterns"]
    target_score: Optional[int] = None
    instructions: Optional[str] = None
    use_smart_share: bool = False


class DocumentGenerationConfig(BaseModel):
    type: Literal["document_generation"] = "document_generation"
    document_type: Literal["report", "summary", "risk_assessment", "client_brief"]
    source: Literal["survey", "email", "context", "manual"] = "context"
    template_id: Optional[str] = None
    output_format: Literal["html", "markdown", "pdf", "docx"] = "html"
    quality: Literal["draft", "review", "final"] = "draft"


class EmailAttachment(BaseModel):
    type: Literal["document", "file", "image"]
    source: Literal["generated", "uploaded"]
    reference: str


class EmailSendOptions(BaseModel):
    check_deliverability: bool = True
    schedule: Optional[datetime] = None
    priority: Literal["low", "normal", "high"] = "normal"


class EmailSendConfig(BaseModel):
    type: Literal["email_send"] = "email_send"
    template_id: Optional[str] = None
    to: List[str]
    subject: str
    body_source: Literal["generated", "template", "manual"] = "generated"
    attachments: List[EmailAttachment] = Field(default_factory=list)
    options: EmailSendOptions = Field(default_factory=EmailSendOptions)


class Condition(BaseModel):
    """A comparison against a dotted path in the workflow context view."""

    context_path: str
    operator: Operator = "equals"
    value: Any = None


class WaitConfig(BaseModel):
    type: Literal["wait"] = "wait"
    wait_type: Literal["time", "condition", "event"] = "time"
    duration_ms: int = 0
    condition: Optional[Condition] = None
    poll_interval_ms: int = 500
    event: Optional[str] = None

    @model_validator(mode="after")
    def _check_variant(self) -> "WaitConfig":
        if self.wait_type == "condition" and self.condition is None:
            raise ValueError("condition waits require a condition")
        if self.wait_type == "event" and not self.event:
            raise ValueError("event waits require an event name")
        return self


class ContextCheckConfig(BaseModel):
    type: Literal["context_check"] = "context_check"
    context_path: str
    expected_value: Any = None
    operator: Operator = "equals"
    on_failure: Literal["retry", "fail"] = "retry"


StepConfig = Annotated[
    Union[
        AIActionConfig,
        UserActionConfig,
        SmartShareConfig,
        ProviderVerificationConfig,
        DeliverabilityFixConfig,
        DocumentGenerationConfig,
        EmailSendConfig,
        WaitConfig,
        ContextCheckConfig,
    ],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Results and errors


class StepResult(BaseModel):
    """Outcome reported by a step handler."""

    type: str
    data: Any = None
    success: bool
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    awaiting_input: bool = Field(
        default=False,
        description="Step dispatched work that completes through an external call",
    )


class StepError(BaseModel):
    code: str
    message: str
    details: Any = None
    recoverable: bool = True
    recovery_action: Optional[str] = None


class Artifact(BaseModel):
    type: str
    id: str
    title: str = ""
    description: str = ""
    data: Any = None


class WorkflowResult(BaseModel):
    type: Literal["success", "partial_success", "cancelled"]
    data: Any = None
    message: str = ""
    summary: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)


class WorkflowError(BaseModel):
    code: str
    message: str
    step_id: Optional[str] = None
    details: Any = None
    recoverable: bool = False
    recovery_action: Optional[str] = None


# ----------------------------------------------------------------------
# Steps, definitions and instances


class WorkflowStep(BaseModel):
    """A step template inside a definition, or its runtime copy in an instance.

    Steps refer to each other only by id through ``dependencies``.
    ``timeout`` is in milliseconds; ``None`` defers to the engine default and
    ``0`` disables the timeout. ``max_retries`` of ``None`` also defers to the
    engine default.
    """

    id: str
    type: StepType
    title: str = ""
    description: str = ""
    config: StepConfig
    dependencies: List[str] = Field(default_factory=list)
    timeout: Optional[int] = None
    max_retries: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    status: StepStatus = StepStatus.PENDING
    result: Optional[StepResult] = None
    error: Optional[StepError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0

    @model_validator(mode="before")
    @classmethod
    def _fill_config_type(cls, data: Any) -> Any:
        # Catalog files may omit the discriminator inside ``config``.
        if isinstance(data, dict):
            config = data.get("config")
            step_type = data.get("type")
            if isinstance(config, dict) and "type" not in config and step_type is not None:
                data = {**data, "config": {**config, "type": StepType(step_type).value}}
        return data

    @model_validator(mode="after")
    def _check_config_matches_type(self) -> "WorkflowStep":
        if self.config.type != self.type.value:
            raise ValueError(
                f"step {self.id}: config for {self.config.type} given to a {self.type.value} step"
            )
        return self

    @property
    def label(self) -> str:
        return self.title or self.id

    def as_template(self) -> "WorkflowStep":
        """Return a copy with all runtime fields reset."""
        return self.model_copy(
            deep=True,
            update={
                "status": StepStatus.PENDING,
                "result": None,
                "error": None,
                "started_at": None,
                "completed_at": None,
                "retry_count": 0,
            },
        )


class WorkflowDefinition(BaseModel):
    """Immutable workflow template."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: Literal[
        "provider", "deliverability", "document", "inbox", "email", "client", "risk"
    ]
    version: str = "1.0.0"
    steps: List[WorkflowStep]
    entry_step_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    required_context: Optional[Dict[str, Any]] = None
    estimated_time_minutes: int = 0
    priority: int = Field(default=5, ge=1, le=10)
    automation_level: Literal["manual", "semi_auto", "full_auto"] = "semi_auto"


class WorkflowInstance(BaseModel):
    """A single execution of a definition with its own copy of the steps."""

    id: str = Field(default_factory=new_instance_id)
    definition_id: str
    current_step_id: str
    status: WorkflowStatus = WorkflowStatus.DRAFT
    context: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStep] = Field(default_factory=list)
    execution_order: List[str] = Field(default_factory=list)
    result: Optional[WorkflowResult] = None
    error: Optional[WorkflowError] = None
    started_at: datetime = Field(default_factory=utcnow)
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    persistent: bool = True

    def step_index(self) -> Dict[str, WorkflowStep]:
        """Map step ids to this instance's step objects."""
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return self.step_index().get(step_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WorkflowContext(BaseModel):
    """Mutable execution context shared by the steps of one instance."""

    snapshot: Dict[str, Any] = Field(default_factory=dict)
    data: Dict[str, Any] = Field(default_factory=dict)
    artifacts: List[Artifact] = Field(default_factory=list)
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    user_inputs: Dict[str, Any] = Field(default_factory=dict)

    def view(self) -> Dict[str, Any]:
        """Merged mapping used to evaluate conditions while a workflow runs.

        ``data`` written by earlier steps overrides start snapshot keys;
        ``step_results`` maps step ids to their result data and
        ``user_inputs`` holds submitted input by step id.
        """

        merged: Dict[str, Any] = {**self.snapshot, **self.data}
        merged["step_results"] = {
            step_id: result.data for step_id, result in self.step_results.items()
        }
        merged["user_inputs"] = dict(self.user_inputs)
        return merged


# ----------------------------------------------------------------------
# Events


class EventType(str, Enum):
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_PAUSED = "step_paused"
    STEP_RESUMED = "step_resumed"
    USER_ACTION_REQUIRED = "user_action_required"


class WorkflowEvent(BaseModel):
    type: EventType
    workflow_instance_id: str
    step_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
