"""Built-in step handlers backed by injected capabilities."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..contracts import (
    AIActionConfig,
    ContextCheckConfig,
    DeliverabilityFixConfig,
    DocumentGenerationConfig,
    EmailSendConfig,
    ProviderVerificationConfig,
    SmartShareConfig,
    StepResult,
    StepType,
    UserActionConfig,
    WaitConfig,
    WorkflowContext,
    WorkflowStep,
)
from .capabilities import (
    ActionRunner,
    DeliverabilityAnalyzer,
    DocumentGenerator,
    Mailer,
    ProviderVerifier,
    SmartShareService,
)
from .conditions import compare, evaluate, resolve_path
from .registry import StepHandlerRegistry

logger = logging.getLogger(__name__)


async def handle_user_action(step: WorkflowStep, ctx: WorkflowContext) -> StepResult:
    config: UserActionConfig = step.config  # type: ignore[assignment]
    return StepResult(
        type=StepType.USER_ACTION.value,
        data={
            "step_id": step.id,
            "action_title": config.action_title,
            "action_type": config.action_type,
            "options": [o.model_dump() for o in config.options],
            "default_value": config.default_value,
        },
        success=True,
        message="Waiting for user action",
        awaiting_input=True,
    )


async def handle_wait(step: WorkflowStep, ctx: WorkflowContext) -> StepResult:
    config: WaitConfig = step.config  # type: ignore[assignment]
    if config.wait_type == "time":
        await asyncio.sleep(config.duration_ms / 1000)
        return StepResult(
            type=StepType.WAIT.value,
            data={"waited_ms": config.duration_ms},
            success=True,
            message="Wait completed",
        )

    if config.wait_type == "event":
        return StepResult(
            type=StepType.WAIT.value,
            data={"event": config.event},
            success=True,
            message=f"Waiting for event {config.event}",
            awaiting_input=True,
        )

    assert config.condition is not None
    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.duration_ms / 1000 if config.duration_ms else None
    while not evaluate(config.condition, ctx.view()):
        if deadline is not None and loop.time() >= deadline:
            return StepResult(
                type=StepType.WAIT.value,
                data={"condition": config.condition.model_dump()},
                success=False,
                message=f"Condition on {config.condition.context_path} not met",
            )
        await asyncio.sleep(config.poll_interval_ms / 1000)
    return StepResult(
        type=StepType.WAIT.value,
        data={"condition": config.condition.model_dump()},
        success=True,
        message="Condition met",
    )


async def handle_context_check(step: WorkflowStep, ctx: WorkflowContext) -> StepResult:
    config: ContextCheckConfig = step.config  # type: ignore[assignment]
    actual = resolve_path(ctx.view(), config.context_path)
    passes = compare(actual, config.operator, config.expected_value)
    return StepResult(
        type=StepType.CONTEXT_CHECK.value,
        data={"passes": passes, "expected": config.expected_value},
        success=passes,
        message="Context check passed" if passes else "Context check failed",
        metadata={} if passes else {"recoverable": config.on_failure == "retry"},
    )


class CapabilityHandlers:
    """Adapts capability objects to the step handler signature."""

    def __init__(
        self,
        actions: Optional[ActionRunner] = None,
        smart_share: Optional[SmartShareService] = None,
        verifier: Optional[ProviderVerifier] = None,
        deliverability: Optional[DeliverabilityAnalyzer] = None,
        documents: Optional[DocumentGenerator] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.actions = actions
        self.smart_share = smart_share
        self.verifier = verifier
        self.deliverability = deliverability
        self.documents = documents
        self.mailer = mailer

    async def ai_action(self, step: WorkflowStep, ctx: WorkflowContext) -> StepResult:
        config: AIActionConfig = step.config  # type: ignore[assignment]
        output = await self.actions.run_action(config, ctx)
        return StepResult(
            type=StepType.AI_ACTION.value,
            data=output,
            success=True,
            message=f"Action {config.action_id} completed",
        )

    async def smart_share_request(
        self, step: WorkflowStep, ctx: WorkflowContext
    ) -> StepResult:
        config: SmartShareConfig = step.config  # type: ignore[assignment]
        logger.info(f"Smart Share requested for {config.look_for} (step={step.id})")
        extracted = await self.smart_share.request(config, ctx)
        if extracted is None:
            return StepResult(
                type=StepType.SMART_SHARE.value,
                data={"requested": True, "look_for": config.look_for},
                success=True,
                message="Smart Share requested",
                awaiting_input=True,
            )
        return StepResult(
            type=StepType.SMART_SHARE.value,
            data=dict(extracted),
            success=True,
            message="Smart Share data extracted",
        )

    async def provider_verification(
        self, step: WorkflowStep, ctx: WorkflowContext
    ) -> StepResult:
        config: ProviderVerificationConfig = step.config  # type: ignore[assignment]
        outcome = dict(await self.verifier.verify(config, ctx))
        verified = bool(outcome.get("verified"))
        return StepResult(
            type=StepType.PROVIDER_VERIFICATION.value,
            data={"provider_id": config.provider_id, **outcome},
            success=verified,
            message="Provider verified" if verified else "Provider verification failed",
        )

    async def deliverability_fix(
        self, step: WorkflowStep, ctx: WorkflowContext
    ) -> StepResult:
        config: DeliverabilityFixConfig = step.config  # type: ignore[assignment]
        analysis = dict(await self.deliverability.analyze(config, ctx))
        risk_level = analysis.get("risk_level", "unknown")
        return StepResult(
            type=StepType.DELIVERABILITY_FIX.value,
            data=analysis,
            success=risk_level != "critical",
            message=f"Deliverability analyzed: {risk_level}",
        )

    async def document_generation(
        self, step: WorkflowStep, ctx: WorkflowContext
    ) -> StepResult:
        config: DocumentGenerationConfig = step.config  # type: ignore[assignment]
        artifact = await self.documents.generate(config, ctx)
        ctx.artifacts.append(artifact)
        return StepResult(
            type=StepType.DOCUMENT_GENERATION.value,
            data=artifact.model_dump(),
            success=True,
            message=f"Document generated: {artifact.title or artifact.id}",
        )

    async def email_send(self, step: WorkflowStep, ctx: WorkflowContext) -> StepResult:
        config: EmailSendConfig = step.config  # type: ignore[assignment]
        delivery = dict(await self.mailer.send(config, ctx))
        return StepResult(
            type=StepType.EMAIL_SEND.value,
            data=delivery,
            success=True,
            message=f"Email sent to {len(config.to)} recipient(s)",
        )


def build_handler_registry(
    actions: Optional[ActionRunner] = None,
    smart_share: Optional[SmartShareService] = None,
    verifier: Optional[ProviderVerifier] = None,
    deliverability: Optional[DeliverabilityAnalyzer] = None,
    documents: Optional[DocumentGenerator] = None,
    mailer: Optional[Mailer] = None,
) -> StepHandlerRegistry:
    """Create a registry with handlers for every capability supplied.

    ``user_action``, ``wait`` and ``context_check`` need no capability and are
    always registered. Step types whose capability is omitted stay
    unregistered, so starting a workflow that needs them fails fast.
    """

    registry = StepHandlerRegistry()
    registry.register(StepType.USER_ACTION, handle_user_action)
    registry.register(StepType.WAIT, handle_wait)
    registry.register(StepType.CONTEXT_CHECK, handle_context_check)

    caps = CapabilityHandlers(
        actions=actions,
        smart_share=smart_share,
        verifier=verifier,
        deliverability=deliverability,
        documents=documents,
        mailer=mailer,
    )
    if actions is not None:
        registry.register(StepType.AI_ACTION, caps.ai_action)
    if smart_share is not None:
        registry.register(StepType.SMART_SHARE, caps.smart_share_request)
    if verifier is not None:
        registry.register(StepType.PROVIDER_VERIFICATION, caps.provider_verification)
    if deliverability is not None:
        registry.register(StepType.DELIVERABILITY_FIX, caps.deliverability_fix)
    if documents is not None:
        registry.register(StepType.DOCUMENT_GENERATION, caps.document_generation)
    if mailer is not None:
        registry.register(StepType.EMAIL_SEND, caps.email_send)
    return registry
