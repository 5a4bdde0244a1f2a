"""Capability interfaces consumed by the built-in step handlers.

Implementations live outside hubflow (provider intelligence, mail transport,
document rendering and so on) and are injected when the handler registry is
built.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from ..contracts import (
    AIActionConfig,
    Artifact,
    DeliverabilityFixConfig,
    DocumentGenerationConfig,
    EmailSendConfig,
    ProviderVerificationConfig,
    SmartShareConfig,
    WorkflowContext,
)


class ActionRunner(Protocol):
    async def run_action(
        self, config: AIActionConfig, context: WorkflowContext
    ) -> Any:
        """Execute an assistant action and return its output."""


class SmartShareService(Protocol):
    async def request(
        self, config: SmartShareConfig, context: WorkflowContext
    ) -> Optional[Mapping[str, Any]]:
        """Request shared data.

        Return the extracted data when it is immediately available, or
        ``None`` when the request was dispatched and the result will arrive
        through ``WorkflowEngine.submit_step_input``.
        """


class ProviderVerifier(Protocol):
    async def verify(
        self, config: ProviderVerificationConfig, context: WorkflowContext
    ) -> Mapping[str, Any]:
        """Verify a provider. The mapping must carry a boolean ``verified`` key."""


class DeliverabilityAnalyzer(Protocol):
    async def analyze(
        self, config: DeliverabilityFixConfig, context: WorkflowContext
    ) -> Mapping[str, Any]:
        """Analyze deliverability. ``risk_level == "critical"`` fails the step."""


class DocumentGenerator(Protocol):
    async def generate(
        self, config: DocumentGenerationConfig, context: WorkflowContext
    ) -> Artifact:
        """Render a document and return it as an artifact."""


class Mailer(Protocol):
    async def send(
        self, config: EmailSendConfig, context: WorkflowContext
    ) -> Mapping[str, Any]:
        """Send (or schedule) an email and return delivery details."""
