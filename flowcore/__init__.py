"""Flowcore: event-driven workflow execution core."""

from .components import Component, ExecutionContext, Trigger, WebhookRequest
from .config import FlowcoreConfig, load_config
from .contracts import QueueMessage
from .dispatch import WorkflowDispatcher
from .executor import NodeExecutor
from .graph import GraphResolver
from .outbox import OutboxPublisher
from .persistence import get_repository
from .reaper import WaitingExecutionReaper
from .registry import ComponentRegistry
from .router import EventRouter
from .runtime import FlowcoreRuntime
from .transports import get_transport
from .worker import QueueWorker

__version__ = "0.1.0"
__all__ = [
    "Component",
    "ComponentRegistry",
    "EventRouter",
    "ExecutionContext",
    "FlowcoreConfig",
    "FlowcoreRuntime",
    "GraphResolver",
    "NodeExecutor",
    "OutboxPublisher",
    "QueueMessage",
    "QueueWorker",
    "Trigger",
    "WaitingExecutionReaper",
    "WebhookRequest",
    "WorkflowDispatcher",
    "get_repository",
    "get_transport",
    "load_config",
]
