"""Runtime contexts handed to component and trigger hooks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..constants import DEFAULT_CHANNEL
from ..errors import ComponentError, UnknownChannelError
from ..persistence.models import EventRecord, ExecutionRecord, Node

logger = logging.getLogger(__name__)


@dataclass
class WebhookRequest:
    """Inbound HTTP callback, reduced to what hooks need."""

    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "POST"

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        return next((v for k, v in self.headers.items() if k.lower() == lowered), None)

    def json(self) -> Any:
        return json.loads(self.body or b"null")


class SetupContext:
    """Passed to ``setup``/``cleanup`` of components and triggers.

    ``metadata`` holds provisioning state recorded by earlier setups of the
    same node; hooks mutate it in place and the caller persists it.
    """

    def __init__(
        self,
        workflow_id: str,
        node: Node,
        configuration: BaseModel,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.node = node
        self.configuration = configuration
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.logger = logging.LoggerAdapter(
            logger, {"workflow_id": workflow_id, "node_id": node.id}
        )

    def is_provisioned(self, resource_id: Optional[str]) -> bool:
        """Whether ``resource_id`` is the resource already provisioned for this node.

        Comparison is by id only; names are display values and may change.
        """
        provisioned = self.metadata.get("resource", {}).get("id")
        return resource_id is not None and provisioned == resource_id

    def record_provisioned(self, resource_id: str, **details: Any) -> None:
        self.metadata["resource"] = {"id": resource_id, **details}


class ExecutionContext:
    """Passed to component hooks while an execution is active."""

    def __init__(
        self,
        execution: ExecutionRecord,
        node: Node,
        configuration: BaseModel,
        channels: Sequence[str],
        event: Optional[EventRecord] = None,
        request: Optional[WebhookRequest] = None,
    ) -> None:
        self.execution = execution
        self.node = node
        self.configuration = configuration
        self.event = event
        self.request = request
        self.metadata: Dict[str, Any] = dict(execution.metadata)
        self.logger = logging.LoggerAdapter(
            logger, {"execution_id": execution.id, "node_id": node.id}
        )
        self._channels = list(channels)
        self._outputs: Dict[str, Tuple[str, List[Any]]] = {}
        self._waiting = False

    @property
    def input(self) -> Any:
        return self.execution.input_data

    @property
    def channels(self) -> List[str]:
        return list(self._channels)

    def emit(self, channel: str, event_type: str, payloads: Sequence[Any]) -> None:
        """Record output on ``channel``.

        Repeated calls on the same channel append payloads; the channel becomes
        one event when the execution completes, so every call on a channel must
        use the same ``event_type``.
        """
        if channel not in self._channels:
            raise UnknownChannelError(channel, self._channels)
        current_type, existing = self._outputs.get(channel, (event_type, []))
        if existing and current_type != event_type:
            raise ComponentError(
                f"channel '{channel}' already carries '{current_type}' events, cannot emit '{event_type}'"
            )
        self._outputs[channel] = (event_type, existing + list(payloads))

    def wait(self) -> None:
        """Suspend the execution until an external callback completes it."""
        self._waiting = True

    @property
    def is_waiting(self) -> bool:
        return self._waiting

    @property
    def outputs(self) -> Dict[str, Tuple[str, List[Any]]]:
        """Emitted output keyed by channel, empty channels excluded."""
        return {ch: out for ch, out in self._outputs.items() if out[1]}


class TriggerEvents:
    """Emit primitive available to triggers."""

    def __init__(self, channels: Sequence[str] = (DEFAULT_CHANNEL,)) -> None:
        self._channels = list(channels)
        self.emitted: List[Tuple[str, str, Any]] = []

    def emit(self, event_type: str, payload: Any, channel: str = DEFAULT_CHANNEL) -> None:
        if channel not in self._channels:
            raise UnknownChannelError(channel, self._channels)
        self.emitted.append((channel, event_type, payload))


class TriggerContext:
    """Passed to ``Trigger.handle_webhook``."""

    def __init__(
        self,
        workflow_id: str,
        node: Node,
        configuration: BaseModel,
        request: WebhookRequest,
        events: TriggerEvents,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.node = node
        self.configuration = configuration
        self.request = request
        self.events = events
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.logger = logging.LoggerAdapter(
            logger, {"workflow_id": workflow_id, "node_id": node.id}
        )
