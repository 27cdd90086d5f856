"""Shared fixtures: sample components, triggers and an in-process pipeline."""

from typing import List, Optional

import pytest
from pydantic import BaseModel

from flowcore.components import Component, ExecutionContext, Trigger
from flowcore.components.context import SetupContext, TriggerContext
from flowcore.constants import DEFAULT_QUEUE_TOPIC
from flowcore.errors import ComponentError
from flowcore.executor import NodeExecutor
from flowcore.outbox import OutboxPublisher
from flowcore.persistence import InMemoryWorkflowRepository
from flowcore.registry import ComponentRegistry
from flowcore.router import EventRouter
from flowcore.transports.inmemory import InMemoryTransport
from flowcore.worker import QueueWorker


class EchoComponent(Component):
    """Emits its input unchanged."""

    name = "echo"

    def __init__(self) -> None:
        self.calls: List[str] = []

    async def execute(self, ctx: ExecutionContext) -> None:
        self.calls.append(ctx.execution.id)
        ctx.emit("default", "echo.done", [ctx.input])


class FailingComponent(Component):
    name = "fail"

    async def execute(self, ctx: ExecutionContext) -> None:
        raise ComponentError("upstream returned 502: bad gateway")


class BranchComponent(Component):
    """Sends the input to ``approved`` or ``rejected`` based on ``amount``."""

    name = "branch"

    def output_channels(self, configuration: BaseModel) -> List[str]:
        return ["approved", "rejected"]

    async def execute(self, ctx: ExecutionContext) -> None:
        channel = "approved" if ctx.input.get("amount", 0) < 100 else "rejected"
        ctx.emit(channel, f"branch.{channel}", [ctx.input])


class HttpConfiguration(BaseModel):
    url: str
    timeout: float = 5.0


class HttpComponent(Component):
    name = "http"
    configuration_model = HttpConfiguration

    def __init__(self) -> None:
        self.executed = 0

    async def setup(self, ctx: SetupContext) -> None:
        if not ctx.configuration.url.startswith("https://"):
            raise ValueError("url must use https")

    async def execute(self, ctx: ExecutionContext) -> None:
        self.executed += 1
        ctx.emit("default", "http.response", [{"status": 200, "url": ctx.configuration.url}])


class ApprovalComponent(Component):
    """Waits for an external approval callback."""

    name = "approval"

    def __init__(self) -> None:
        self.canceled: List[str] = []

    def output_channels(self, configuration: BaseModel) -> List[str]:
        return ["approved", "rejected"]

    async def execute(self, ctx: ExecutionContext) -> None:
        ctx.metadata["requested"] = True
        ctx.wait()

    async def process_queue_item(self, ctx: ExecutionContext) -> Optional[str]:
        await self.execute(ctx)
        return f"approval-{ctx.execution.id}"

    async def handle_webhook(self, ctx: ExecutionContext) -> int:
        if ctx.request.header("X-Signature") != "valid":
            return 403
        body = ctx.request.json()
        if body.get("pending"):
            ctx.wait()
            return 202
        channel = "approved" if body.get("approved") else "rejected"
        ctx.emit(channel, f"approval.{channel}", [body])
        return 200

    async def cancel(self, ctx: ExecutionContext) -> None:
        self.canceled.append(ctx.execution.id)
        raise RuntimeError("approval service unreachable")


class WebhookConfiguration(BaseModel):
    hook_id: str = "hook-1"
    token: Optional[str] = None


class WebhookTrigger(Trigger):
    name = "webhook"
    configuration_model = WebhookConfiguration

    def __init__(self) -> None:
        self.provisioned: List[str] = []
        self.cleaned: List[str] = []

    async def setup(self, ctx: SetupContext) -> None:
        hook_id = ctx.configuration.hook_id
        if ctx.is_provisioned(hook_id):
            return
        self.provisioned.append(hook_id)
        ctx.record_provisioned(hook_id, url=f"https://hooks.example.com/{hook_id}")

    async def handle_webhook(self, ctx: TriggerContext) -> int:
        token = ctx.configuration.token
        if token is not None and ctx.request.header("X-Token") != token:
            return 401
        ctx.events.emit("webhook.received", ctx.request.json())
        return 200

    async def cleanup(self, ctx: SetupContext) -> None:
        self.cleaned.append(ctx.metadata["resource"]["id"])


class Pipeline:
    """Router, outbox, transport and worker wired together in memory."""

    def __init__(self, repository, registry) -> None:
        self.repository = repository
        self.registry = registry
        self.transport = InMemoryTransport(poll_interval=0.01)
        self.outbox = OutboxPublisher(repository, self.transport, publish_grace=0)
        self.router = EventRouter(repository, outbox=self.outbox)
        self.executor = NodeExecutor(repository, registry, settle_retry_delay=0)
        self.worker = QueueWorker(repository, self.transport, self.executor)

    async def deliver_all(self) -> int:
        delivered = 0
        while True:
            delivery = await self.transport.get(DEFAULT_QUEUE_TOPIC)
            if delivery is None:
                return delivered
            await self.worker.handle_delivery(*delivery)
            delivered += 1

    async def settle(self, max_rounds: int = 20) -> None:
        """Route and deliver until nothing is left to do."""
        for _ in range(max_rounds):
            routed = await self.router.route_once()
            delivered = await self.deliver_all()
            if not routed and not delivered:
                return


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry():
    return ComponentRegistry(
        [
            EchoComponent(),
            FailingComponent(),
            BranchComponent(),
            HttpComponent(),
            ApprovalComponent(),
            WebhookTrigger(),
        ]
    )


@pytest.fixture
def pipeline(repository, registry):
    return Pipeline(repository, registry)
