"""Message contracts exchanged between the router and queue workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from .persistence.models import QueueItemRecord


class QueueMessage(BaseModel):
    """Envelope published on the queue transport.

    Carries only identifiers; the worker reloads the queue item from the store
    so that a redelivered or stale message never carries authoritative state.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue_item_id: str
    workflow_id: str
    node_id: str
    event_id: str
    attempt: int = 1
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_item(cls, item: QueueItemRecord) -> "QueueMessage":
        return cls(
            queue_item_id=item.id,
            workflow_id=item.workflow_id,
            node_id=item.node_id,
            event_id=item.event_id,
        )

    def bump_attempt(self) -> "QueueMessage":
        """Return a copy used when a message is re-published after a failure."""
        return self.model_copy(
            update={"message_id": str(uuid.uuid4()), "attempt": self.attempt + 1}
        )

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "QueueMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
