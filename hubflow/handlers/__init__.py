"""Step handler registry and built-in handlers."""

from __future__ import annotations

from .builtin import (
    CapabilityHandlers,
    build_handler_registry,
    handle_context_check,
    handle_user_action,
    handle_wait,
)
from .capabilities import (
    ActionRunner,
    DeliverabilityAnalyzer,
    DocumentGenerator,
    Mailer,
    ProviderVerifier,
    SmartShareService,
)
from .registry import StepHandler, StepHandlerRegistry

__all__ = [
    "ActionRunner",
    "CapabilityHandlers",
    "DeliverabilityAnalyzer",
    "DocumentGenerator",
    "Mailer",
    "ProviderVerifier",
    "SmartShareService",
    "StepHandler",
    "StepHandlerRegistry",
    "build_handler_registry",
    "handle_context_check",
    "handle_user_action",
    "handle_wait",
]
