"""Queue worker: consumes queue item deliveries and runs their executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set, Tuple

from .constants import DEFAULT_QUEUE_TOPIC, DEFAULT_WORKER_CONCURRENCY
from .contracts import QueueMessage
from .errors import InvalidTransitionError, TransientError
from .executor import NodeExecutor
from .persistence.models import ExecutionRecord, ExecutionState
from .persistence.repository import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class QueueWorker:
    """Executes workflow nodes by listening to transport messages.

    Delivery is at-least-once, so the same queue item may arrive several times,
    possibly concurrently. The execution row keyed by queue item id makes sure
    component logic runs at most once per item.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        executor: NodeExecutor,
        topic: str = DEFAULT_QUEUE_TOPIC,
        concurrency: int = DEFAULT_WORKER_CONCURRENCY,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._executor = executor
        self.topic = topic
        self.concurrency = concurrency
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

    async def process(self, message: QueueMessage) -> Optional[ExecutionRecord]:
        """Create and run the execution for the delivered queue item.

        Returns ``None`` when the delivery was dropped: unknown queue item, or
        an execution that another delivery already owns.
        """
        item = await self._repository.get_queue_item(message.queue_item_id)
        if item is None:
            logger.warning(f"Dropping message {message.message_id}: unknown queue item {message.queue_item_id}")
            return None

        event = await self._repository.get_event(item.event_id)
        execution = await self._repository.create_execution(
            ExecutionRecord(
                workflow_id=item.workflow_id,
                node_id=item.node_id,
                queue_item_id=item.id,
                event_id=item.event_id,
                root_event_id=item.root_event_id,
                input_data=event.data if event is not None else None,
            )
        )
        if execution is None:
            existing = await self._repository.get_execution_for_queue_item(item.id)
            if existing is None or existing.state != ExecutionState.PENDING:
                logger.warning(
                    f"Dropping duplicate delivery of queue item {item.id} (attempt {message.attempt})"
                )
                return None
            # created by a delivery that died before starting it
            logger.info(f"Resuming pending execution {existing.id} for queue item {item.id}")
            execution = existing

        workflow = await self._repository.get_workflow(item.workflow_id)
        return await self._executor.run(execution, workflow, event)

    async def handle_delivery(self, raw_message: Any, message: QueueMessage) -> None:
        """Process one delivery and settle it with the transport."""
        try:
            execution = await self.process(message)
        except InvalidTransitionError as exc:
            # another delivery started the same execution first
            logger.warning(f"Dropping delivery of queue item {message.queue_item_id}: {exc}")
        except TransientError as exc:
            logger.error(
                f"Transient failure for queue item {message.queue_item_id}, requeueing: {exc}"
            )
            await self._transport.nack(raw_message, requeue=True)
            return
        except Exception:
            logger.exception(f"Unexpected error processing queue item {message.queue_item_id}")
            await self._transport.nack(raw_message, requeue=False)
            return
        else:
            if execution is not None:
                logger.debug(f"Queue item {message.queue_item_id} settled as {execution.state.value}")
        await self._transport.ack(raw_message)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume deliveries until the subscription ends or ``stop`` is called.

        Each delivery runs in its own task; at most ``concurrency`` run at once.
        In-flight deliveries finish before this returns.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(raw_message: Any, message: QueueMessage) -> None:
            try:
                await self.handle_delivery(raw_message, message)
            finally:
                semaphore.release()

        subscription = self._transport.subscribe(self.topic, lifespan=lifespan)

        async def _next_delivery() -> Tuple[Any, QueueMessage]:
            return await subscription.__anext__()

        logger.info(f"Queue worker consuming {self.topic} (concurrency {self.concurrency})")
        stop_wait = asyncio.create_task(self._stopped.wait())
        try:
            while not self._stopped.is_set():
                receive = asyncio.create_task(_next_delivery())
                await asyncio.wait({receive, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
                if not receive.done():
                    receive.cancel()
                    await asyncio.gather(receive, return_exceptions=True)
                    break
                try:
                    raw_message, message = receive.result()
                except StopAsyncIteration:
                    break
                await semaphore.acquire()
                task = asyncio.create_task(_run(raw_message, message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            stop_wait.cancel()
            await subscription.aclose()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(f"Queue worker for {self.topic} stopped")

    def stop(self) -> None:
        """Stop taking new deliveries."""
        self._stopped.set()
