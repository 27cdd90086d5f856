"""Capability contracts implemented by integration components and triggers."""

from __future__ import annotations

import abc
from typing import ClassVar, List, Optional, Type

from pydantic import BaseModel, ConfigDict

from ..constants import DEFAULT_CHANNEL
from .context import ExecutionContext, SetupContext, TriggerContext


class EmptyConfiguration(BaseModel):
    """Configuration model for nodes that take no settings."""

    model_config = ConfigDict(extra="allow")


class Component(abc.ABC):
    """A unit of work a workflow node runs for each queue item.

    Subclasses set ``name`` and usually ``configuration_model``. Output is
    produced only through ``ctx.emit``; raising fails the execution.
    """

    name: ClassVar[str]
    label: ClassVar[Optional[str]] = None
    description: ClassVar[Optional[str]] = None
    configuration_model: ClassVar[Type[BaseModel]] = EmptyConfiguration

    def output_channels(self, configuration: BaseModel) -> List[str]:
        return [DEFAULT_CHANNEL]

    async def setup(self, ctx: SetupContext) -> None:
        """Validate configuration beyond what the model enforces."""

    @abc.abstractmethod
    async def execute(self, ctx: ExecutionContext) -> None:
        raise NotImplementedError

    async def process_queue_item(self, ctx: ExecutionContext) -> Optional[str]:
        """Run the component for a queue item.

        Returns an async completion handle when the work finishes later
        through :meth:`handle_webhook`. The default runs :meth:`execute`
        synchronously.
        """
        await self.execute(ctx)
        return None

    async def cancel(self, ctx: ExecutionContext) -> None:
        """Release external resources held by a running or waiting execution."""

    async def handle_webhook(self, ctx: ExecutionContext) -> int:
        """Handle the external callback for a waiting execution."""
        return 200


class Trigger(abc.ABC):
    """Produces root events, typically from inbound webhooks."""

    name: ClassVar[str]
    label: ClassVar[Optional[str]] = None
    description: ClassVar[Optional[str]] = None
    configuration_model: ClassVar[Type[BaseModel]] = EmptyConfiguration

    def output_channels(self, configuration: BaseModel) -> List[str]:
        return [DEFAULT_CHANNEL]

    async def setup(self, ctx: SetupContext) -> None:
        """Provision external resources. Must be a no-op when already provisioned."""

    @abc.abstractmethod
    async def handle_webhook(self, ctx: TriggerContext) -> int:
        raise NotImplementedError

    async def cleanup(self, ctx: SetupContext) -> None:
        """Tear down what ``setup`` provisioned."""
