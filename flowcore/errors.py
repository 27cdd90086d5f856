"""Exception hierarchy for flowcore."""

from __future__ import annotations

from typing import Iterable, Optional


class FlowcoreError(Exception):
    """Base exception for all flowcore errors."""

    pass


class ConfigurationError(FlowcoreError):
    """Raised when a component or trigger configuration is invalid."""

    pass


class TransientError(FlowcoreError):
    """Raised for infrastructure failures that are safe to retry."""

    pass


class RepositoryError(TransientError):
    """Raised when the durable store cannot complete an operation."""

    pass


class TransportError(TransientError):
    """Raised when the message broker cannot complete an operation."""

    pass


class GraphValidationError(FlowcoreError):
    """Raised when a workflow definition is structurally invalid."""

    pass


class GraphResolutionError(FlowcoreError):
    """Raised when an event cannot be resolved against its workflow graph."""

    def __init__(self, event_id: str, message: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' could not be routed: {message}")


class UnknownComponentError(ConfigurationError):
    """Raised when a node references a component or trigger that is not registered."""

    def __init__(self, name: str, kind: str = "component"):
        self.name = name
        self.kind = kind
        super().__init__(f"No {kind} registered under name '{name}'")


class UnknownChannelError(FlowcoreError):
    """Raised when output is emitted on a channel the node does not declare."""

    def __init__(self, channel: str, declared: Iterable[str]):
        self.channel = channel
        self.declared = list(declared)
        super().__init__(
            f"Output channel '{channel}' is not declared (available: {', '.join(self.declared)})"
        )


class InvalidTransitionError(FlowcoreError):
    """Raised when an execution state change is not allowed."""

    def __init__(self, execution_id: str, current: Optional[str], target: str):
        self.execution_id = execution_id
        self.current = current
        self.target = target
        super().__init__(
            f"Execution '{execution_id}' cannot move from {current} to {target}"
        )


class ComponentError(FlowcoreError):
    """Raised by component code to fail an execution with an upstream message."""

    pass
