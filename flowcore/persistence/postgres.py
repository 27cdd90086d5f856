"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import asyncpg

from ..errors import InvalidTransitionError, RepositoryError
from .models import (
    EventRecord,
    EventState,
    ExecutionRecord,
    ExecutionState,
    QueueItemRecord,
    WorkflowDefinition,
    check_transition,
    utcnow,
)
from .repository import WorkflowRepository

_EVENT_COLUMNS = (
    "id, workflow_id, node_id, channel, type, data, state, root_event_id, "
    "execution_id, created_at"
)
_ITEM_COLUMNS = "id, workflow_id, node_id, event_id, root_event_id, published_at, created_at"
_EXECUTION_COLUMNS = (
    "id, workflow_id, node_id, queue_item_id, event_id, root_event_id, state, "
    "input_data, output_data, error_message, async_handle, waiting_since, metadata, "
    "created_at, updated_at"
)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _row_to_event(r: asyncpg.Record) -> EventRecord:
    return EventRecord(**dict(r))


def _row_to_item(r: asyncpg.Record) -> QueueItemRecord:
    return QueueItemRecord(**dict(r))


def _row_to_execution(r: asyncpg.Record) -> ExecutionRecord:
    data = dict(r)
    data["metadata"] = data["metadata"] or {}
    return ExecutionRecord(**data)


async def _insert_queue_item(conn: asyncpg.Connection, item: QueueItemRecord) -> bool:
    row = await conn.fetchrow(
        f"""
        INSERT INTO queue_items ({_ITEM_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)
        ON CONFLICT (event_id, node_id) DO NOTHING
        RETURNING id
        """,
        item.id,
        item.workflow_id,
        item.node_id,
        item.event_id,
        item.root_event_id,
        item.published_at,
        item.created_at,
    )
    return row is not None


async def _insert_event(conn: asyncpg.Connection, event: EventRecord) -> None:
    await conn.execute(
        f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
        event.id,
        event.workflow_id,
        event.node_id,
        event.channel,
        event.type,
        event.data,
        event.state.value,
        event.root_event_id,
        event.execution_id,
        event.created_at,
    )


async def _get_workflow(conn: asyncpg.Connection, workflow_id: str) -> WorkflowDefinition | None:
    row = await conn.fetchrow("SELECT definition FROM workflows WHERE id = $1", workflow_id)
    return WorkflowDefinition.model_validate(row["definition"]) if row else None


class _PostgresClaim:
    def __init__(self, conn: asyncpg.Connection, events: List[EventRecord]):
        self._conn = conn
        self.events = events

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        try:
            return await _get_workflow(self._conn, workflow_id)
        except _DRIVER_ERRORS as exc:
            raise RepositoryError(f"Failed to load workflow {workflow_id}: {exc}") from exc

    async def route(
        self, event: EventRecord, node_ids: Sequence[str]
    ) -> List[QueueItemRecord]:
        try:
            # nested transaction is a savepoint inside the claim
            async with self._conn.transaction():
                now = utcnow()
                for node_id in node_ids:
                    await _insert_queue_item(
                        self._conn,
                        QueueItemRecord(
                            workflow_id=event.workflow_id,
                            node_id=node_id,
                            event_id=event.id,
                            root_event_id=event.root_event_id,
                            created_at=now,
                        ),
                    )
                await self._conn.execute(
                    "UPDATE events SET state = $1 WHERE id = $2 AND state = $3",
                    EventState.ROUTED.value,
                    event.id,
                    EventState.PENDING.value,
                )
                rows = await self._conn.fetch(
                    f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE event_id = $1 AND published_at IS NULL ORDER BY created_at",
                    event.id,
                )
        except _DRIVER_ERRORS as exc:
            raise RepositoryError(f"Failed to route event {event.id}: {exc}") from exc
        event.state = EventState.ROUTED
        return [_row_to_item(r) for r in rows]


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL.

    Pending events are claimed with ``SELECT ... FOR UPDATE SKIP LOCKED`` so
    several routers can poll the same table without double-processing rows.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
            await conn.set_type_codec(
                "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
            )
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
        except _DRIVER_ERRORS as exc:
            raise RepositoryError(f"Cannot connect to PostgreSQL: {exc}") from exc
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                definition JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS node_metadata (
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                metadata JSONB NOT NULL,
                PRIMARY KEY (workflow_id, node_id)
            );
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                type TEXT NOT NULL,
                data JSONB,
                state TEXT NOT NULL,
                root_event_id TEXT NOT NULL,
                execution_id TEXT,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS events_pending_idx
                ON events (created_at) WHERE state = 'pending';
            CREATE TABLE IF NOT EXISTS queue_items (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                root_event_id TEXT NOT NULL,
                published_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE (event_id, node_id)
            );
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                queue_item_id TEXT NOT NULL UNIQUE,
                event_id TEXT NOT NULL,
                root_event_id TEXT NOT NULL,
                state TEXT NOT NULL,
                input_data JSONB,
                output_data JSONB,
                error_message TEXT,
                async_handle TEXT,
                waiting_since TIMESTAMPTZ,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS executions_handle_idx ON executions (async_handle);
            ALTER TABLE executions ADD COLUMN IF NOT EXISTS waiting_since TIMESTAMPTZ;
            """
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            yield conn
        except _DRIVER_ERRORS as exc:
            raise RepositoryError(f"PostgreSQL operation failed: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO workflows (id, definition) VALUES ($1, $2)
                ON CONFLICT (id) DO UPDATE SET definition = EXCLUDED.definition
                """,
                workflow.id,
                workflow.model_dump(mode="json"),
            )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        async with self._connection() as conn:
            return await _get_workflow(conn, workflow_id)

    async def get_node_metadata(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT metadata FROM node_metadata WHERE workflow_id = $1 AND node_id = $2",
                workflow_id,
                node_id,
            )
        return row["metadata"] if row else {}

    async def save_node_metadata(
        self, workflow_id: str, node_id: str, metadata: Dict[str, Any]
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO node_metadata (workflow_id, node_id, metadata) VALUES ($1, $2, $3)
                ON CONFLICT (workflow_id, node_id) DO UPDATE SET metadata = EXCLUDED.metadata
                """,
                workflow_id,
                node_id,
                metadata,
            )

    # ------------------------------------------------------------------
    async def create_event(self, event: EventRecord) -> EventRecord:
        async with self._connection() as conn:
            await _insert_event(conn, event)
        return event

    async def get_event(self, event_id: str) -> EventRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1", event_id
            )
        return _row_to_event(row) if row else None

    async def list_events(
        self,
        workflow_id: Optional[str] = None,
        state: Optional[EventState] = None,
        root_event_id: Optional[str] = None,
    ) -> List[EventRecord]:
        clauses, params = [], []
        for column, value in (
            ("workflow_id", workflow_id),
            ("state", EventState(state).value if state is not None else None),
            ("root_event_id", root_event_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM events{where} ORDER BY created_at", *params
            )
        return [_row_to_event(r) for r in rows]

    @asynccontextmanager
    async def claim_pending_events(self, limit: int) -> AsyncIterator[_PostgresClaim]:
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    SELECT {_EVENT_COLUMNS} FROM events
                    WHERE state = $1
                    ORDER BY created_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                    """,
                    EventState.PENDING.value,
                    limit,
                )
                yield _PostgresClaim(conn, [_row_to_event(r) for r in rows])

    # ------------------------------------------------------------------
    async def create_queue_item(self, item: QueueItemRecord) -> bool:
        async with self._connection() as conn:
            return await _insert_queue_item(conn, item)

    async def get_queue_item(self, item_id: str) -> QueueItemRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE id = $1", item_id
            )
        return _row_to_item(row) if row else None

    async def list_queue_items(
        self, event_id: Optional[str] = None, node_id: Optional[str] = None
    ) -> List[QueueItemRecord]:
        clauses, params = [], []
        for column, value in (("event_id", event_id), ("node_id", node_id)):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ITEM_COLUMNS} FROM queue_items{where} ORDER BY created_at", *params
            )
        return [_row_to_item(r) for r in rows]

    async def list_unpublished_queue_items(
        self, limit: int, created_before: Optional[datetime] = None
    ) -> List[QueueItemRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_ITEM_COLUMNS} FROM queue_items
                WHERE published_at IS NULL AND ($1::timestamptz IS NULL OR created_at < $1)
                ORDER BY created_at
                LIMIT $2
                """,
                created_before,
                limit,
            )
        return [_row_to_item(r) for r in rows]

    async def mark_queue_item_published(self, item_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE queue_items SET published_at = $1 WHERE id = $2 AND published_at IS NULL",
                utcnow(),
                item_id,
            )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: ExecutionRecord) -> ExecutionRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO executions ({_EXECUTION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                ON CONFLICT (queue_item_id) DO NOTHING
                RETURNING id
                """,
                execution.id,
                execution.workflow_id,
                execution.node_id,
                execution.queue_item_id,
                execution.event_id,
                execution.root_event_id,
                execution.state.value,
                execution.input_data,
                execution.output_data,
                execution.error_message,
                execution.async_handle,
                execution.waiting_since,
                execution.metadata,
                execution.created_at,
                execution.updated_at,
            )
        return execution if row is not None else None

    async def _fetch_execution(self, column: str, value: str) -> ExecutionRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE {column} = $1", value
            )
        return _row_to_execution(row) if row else None

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return await self._fetch_execution("id", execution_id)

    async def get_execution_for_queue_item(
        self, queue_item_id: str
    ) -> ExecutionRecord | None:
        return await self._fetch_execution("queue_item_id", queue_item_id)

    async def find_execution_by_handle(self, handle: str) -> ExecutionRecord | None:
        return await self._fetch_execution("async_handle", handle)

    async def list_executions(
        self,
        state: Optional[ExecutionState] = None,
        workflow_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        waiting_before: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        clauses, params = [], []
        if state is not None:
            params.append(ExecutionState(state).value)
            clauses.append(f"state = ${len(params)}")
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if updated_before is not None:
            params.append(updated_before)
            clauses.append(f"updated_at < ${len(params)}")
        if waiting_before is not None:
            params.append(waiting_before)
            clauses.append(f"COALESCE(waiting_since, updated_at) < ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions{where} ORDER BY created_at",
                *params,
            )
        return [_row_to_execution(r) for r in rows]

    async def _transition(
        self,
        conn: asyncpg.Connection,
        execution_id: str,
        target: ExecutionState,
        fields: Dict[str, Any],
    ) -> ExecutionRecord:
        row = await conn.fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = $1 FOR UPDATE",
            execution_id,
        )
        if row is None:
            raise InvalidTransitionError(execution_id, None, target.value)
        execution = _row_to_execution(row)
        check_transition(execution_id, execution.state, target, fields)

        for key, value in fields.items():
            setattr(execution, key, value)
        execution.state = target
        execution.updated_at = utcnow()
        await conn.execute(
            """
            UPDATE executions
            SET state = $1, output_data = $2, error_message = $3, async_handle = $4,
                waiting_since = $5, metadata = $6, updated_at = $7
            WHERE id = $8
            """,
            target.value,
            execution.output_data,
            execution.error_message,
            execution.async_handle,
            execution.waiting_since,
            execution.metadata,
            execution.updated_at,
            execution_id,
        )
        return execution

    async def transition_execution(
        self, execution_id: str, target: ExecutionState, **fields: Any
    ) -> ExecutionRecord:
        async with self._connection() as conn:
            async with conn.transaction():
                return await self._transition(conn, execution_id, target, fields)

    async def complete_execution(
        self,
        execution_id: str,
        output_data: Dict[str, Any],
        events: Sequence[EventRecord],
    ) -> ExecutionRecord:
        async with self._connection() as conn:
            async with conn.transaction():
                execution = await self._transition(
                    conn, execution_id, ExecutionState.COMPLETED, {"output_data": output_data}
                )
                for event in events:
                    await _insert_event(conn, event)
        return execution
