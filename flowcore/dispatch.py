"""Workflow dispatcher: trigger provisioning and root event creation."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ValidationError

from .components.base import Trigger
from .components.context import SetupContext, TriggerContext, TriggerEvents, WebhookRequest
from .constants import DEFAULT_CHANNEL
from .errors import ConfigurationError, UnknownChannelError
from .persistence.models import EventRecord, Node, WorkflowDefinition
from .persistence.repository import WorkflowRepository
from .registry import ComponentRegistry

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for starting workflows.

    Every event created here is a root event: it has no producing execution
    and its ``root_event_id`` is its own id.
    """

    def __init__(self, repository: WorkflowRepository, registry: ComponentRegistry) -> None:
        self._repository = repository
        self._registry = registry

    async def _trigger_node(
        self, workflow_id: str, node_id: str
    ) -> Tuple[WorkflowDefinition, Node, Trigger, BaseModel]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise ConfigurationError(f"workflow '{workflow_id}' not found")
        node = workflow.get_node(node_id)
        if node is None or node.kind != "trigger":
            raise ConfigurationError(f"'{node_id}' is not a trigger node of workflow '{workflow_id}'")
        trigger = self._registry.trigger(node.ref)
        try:
            configuration = trigger.configuration_model.model_validate(node.configuration)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid configuration for {trigger.name}: {exc}") from exc
        return workflow, node, trigger, configuration

    async def register_workflow(self, workflow: WorkflowDefinition) -> None:
        """Persist ``workflow`` and run setup for each of its trigger nodes."""
        await self._repository.save_workflow(workflow)
        for node in workflow.nodes:
            if node.kind == "trigger":
                await self.setup_trigger(workflow.id, node.id)

    async def setup_trigger(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        """Run the trigger's setup hook and persist its provisioning metadata.

        Safe to call repeatedly: triggers check ``ctx.is_provisioned`` and skip
        work already done, and unchanged metadata is not written again.
        """
        _, node, trigger, configuration = await self._trigger_node(workflow_id, node_id)
        stored = await self._repository.get_node_metadata(workflow_id, node_id)
        ctx = SetupContext(workflow_id, node, configuration, stored)
        await trigger.setup(ctx)
        if ctx.metadata != stored:
            await self._repository.save_node_metadata(workflow_id, node_id, ctx.metadata)
            logger.info(f"Provisioned trigger {trigger.name} for node {node_id} of workflow {workflow_id}")
        return ctx.metadata

    async def cleanup_trigger(self, workflow_id: str, node_id: str) -> None:
        _, node, trigger, configuration = await self._trigger_node(workflow_id, node_id)
        stored = await self._repository.get_node_metadata(workflow_id, node_id)
        await trigger.cleanup(SetupContext(workflow_id, node, configuration, stored))
        await self._repository.save_node_metadata(workflow_id, node_id, {})
        logger.info(f"Cleaned up trigger {trigger.name} for node {node_id} of workflow {workflow_id}")

    async def handle_trigger_webhook(
        self, workflow_id: str, node_id: str, request: WebhookRequest
    ) -> int:
        """Pass an inbound request to the trigger and store the events it emits.

        Returns the HTTP status for the caller. Nothing is stored when the
        trigger rejects the request.
        """
        _, node, trigger, configuration = await self._trigger_node(workflow_id, node_id)
        metadata = await self._repository.get_node_metadata(workflow_id, node_id)
        events = TriggerEvents(trigger.output_channels(configuration))
        ctx = TriggerContext(workflow_id, node, configuration, request, events, metadata)
        try:
            status = await trigger.handle_webhook(ctx)
        except Exception:
            logger.exception(f"Trigger {trigger.name} failed handling webhook for node {node_id}")
            return 500

        if status >= 400:
            logger.warning(f"Trigger {trigger.name} rejected webhook for node {node_id} with {status}")
            return status

        for channel, event_type, payload in events.emitted:
            await self._store_root_event(workflow_id, node_id, channel, event_type, payload)
        return status

    async def fire(
        self,
        workflow_id: str,
        node_id: str,
        event_type: str,
        data: Any = None,
        channel: str = DEFAULT_CHANNEL,
    ) -> EventRecord:
        """Start ``workflow_id`` from trigger ``node_id`` without a webhook."""
        _, _, trigger, configuration = await self._trigger_node(workflow_id, node_id)
        channels: List[str] = trigger.output_channels(configuration)
        if channel not in channels:
            raise UnknownChannelError(channel, channels)
        return await self._store_root_event(workflow_id, node_id, channel, event_type, data)

    async def _store_root_event(
        self, workflow_id: str, node_id: str, channel: str, event_type: str, data: Any
    ) -> EventRecord:
        event = await self._repository.create_event(
            EventRecord(
                workflow_id=workflow_id,
                node_id=node_id,
                channel=channel,
                type=event_type,
                data=data,
            )
        )
        logger.info(f"Created root event {event.id} ({event_type}) from node {node_id}")
        return event
