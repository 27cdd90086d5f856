"""Component and trigger contracts."""

from .base import Component, EmptyConfiguration, Trigger
from .context import (
    ExecutionContext,
    SetupContext,
    TriggerContext,
    TriggerEvents,
    WebhookRequest,
)

__all__ = [
    "Component",
    "EmptyConfiguration",
    "ExecutionContext",
    "SetupContext",
    "Trigger",
    "TriggerContext",
    "TriggerEvents",
    "WebhookRequest",
]
