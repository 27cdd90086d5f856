"""Resolve the downstream nodes an event should be routed to."""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import GraphResolutionError
from .persistence.models import EventRecord, Node, WorkflowDefinition

logger = logging.getLogger(__name__)


class GraphResolver:
    """Computes routing targets from a workflow definition.

    Stateless: callers load the workflow (inside their claim) and pass it in.
    """

    def downstream_nodes(
        self,
        workflow: WorkflowDefinition,
        node_id: str,
        channel: str,
        data: object,
        event_id: str = "",
    ) -> List[Node]:
        """Targets of edges leaving ``node_id`` on ``channel`` that accept ``data``.

        Ordered by edge declaration; a node reached by several edges appears once.
        """
        targets: List[Node] = []
        seen: set[str] = set()
        for edge in workflow.edges:
            if edge.source_id != node_id or edge.channel != channel:
                continue
            if edge.predicate is not None and not edge.predicate.evaluate(data):
                logger.debug(
                    f"Edge {edge.source_id}->{edge.target_id} rejected data on channel {channel}"
                )
                continue
            if edge.target_id in seen:
                continue
            node = workflow.get_node(edge.target_id)
            if node is None:
                raise GraphResolutionError(
                    event_id, f"edge target '{edge.target_id}' missing from workflow '{workflow.id}'"
                )
            seen.add(edge.target_id)
            targets.append(node)
        return targets

    def resolve(
        self, workflow: Optional[WorkflowDefinition], event: EventRecord
    ) -> List[Node]:
        """Downstream nodes for ``event``, validating it against ``workflow``."""
        if workflow is None:
            raise GraphResolutionError(event.id, f"workflow '{event.workflow_id}' not found")
        if workflow.id != event.workflow_id:
            raise GraphResolutionError(
                event.id, f"workflow '{workflow.id}' does not own the event"
            )
        if workflow.get_node(event.node_id) is None:
            raise GraphResolutionError(
                event.id,
                f"origin node '{event.node_id}' not found in workflow '{workflow.id}'",
            )
        return self.downstream_nodes(
            workflow, event.node_id, event.channel, event.data, event_id=event.id
        )
