"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..errors import InvalidTransitionError, RepositoryError
from .models import (
    EventRecord,
    EventState,
    ExecutionRecord,
    ExecutionState,
    QueueItemRecord,
    WorkflowDefinition,
    check_transition,
    new_id,
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


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_event(r: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=r["id"],
        workflow_id=r["workflow_id"],
        node_id=r["node_id"],
        channel=r["channel"],
        type=r["type"],
        data=json.loads(r["data"]) if r["data"] is not None else None,
        state=r["state"],
        root_event_id=r["root_event_id"],
        execution_id=r["execution_id"],
        created_at=_parse_ts(r["created_at"]),
    )


def _row_to_item(r: sqlite3.Row) -> QueueItemRecord:
    return QueueItemRecord(
        id=r["id"],
        workflow_id=r["workflow_id"],
        node_id=r["node_id"],
        event_id=r["event_id"],
        root_event_id=r["root_event_id"],
        published_at=_parse_ts(r["published_at"]),
        created_at=_parse_ts(r["created_at"]),
    )


def _row_to_execution(r: sqlite3.Row) -> ExecutionRecord:
    return ExecutionRecord(
        id=r["id"],
        workflow_id=r["workflow_id"],
        node_id=r["node_id"],
        queue_item_id=r["queue_item_id"],
        event_id=r["event_id"],
        root_event_id=r["root_event_id"],
        state=r["state"],
        input_data=json.loads(r["input_data"]) if r["input_data"] is not None else None,
        output_data=json.loads(r["output_data"]) if r["output_data"] else None,
        error_message=r["error_message"],
        async_handle=r["async_handle"],
        waiting_since=_parse_ts(r["waiting_since"]),
        metadata=json.loads(r["metadata"]) if r["metadata"] else {},
        created_at=_parse_ts(r["created_at"]),
        updated_at=_parse_ts(r["updated_at"]),
    )


class _SQLiteClaim:
    def __init__(self, repo: "SQLiteWorkflowRepository", events: List[EventRecord]):
        self._repo = repo
        self.events = events

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await asyncio.to_thread(self._repo._get_workflow, workflow_id)

    async def route(
        self, event: EventRecord, node_ids: Sequence[str]
    ) -> List[QueueItemRecord]:
        try:
            items = await asyncio.to_thread(self._repo._route_event, event, list(node_ids))
        except sqlite3.Error as exc:
            raise RepositoryError(f"Failed to route event {event.id}: {exc}") from exc
        event.state = EventState.ROUTED
        return items


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    A single connection is shared and every operation is serialized through an
    asyncio lock. Claims take the database write lock with ``BEGIN IMMEDIATE``
    and route each event inside its own savepoint.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                definition TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS node_metadata (
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                metadata TEXT NOT NULL,
                PRIMARY KEY (workflow_id, node_id)
            );
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                type TEXT NOT NULL,
                data TEXT,
                state TEXT NOT NULL,
                root_event_id TEXT NOT NULL,
                execution_id TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS events_state_idx ON events (state, created_at);
            CREATE TABLE IF NOT EXISTS queue_items (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                root_event_id TEXT NOT NULL,
                published_at TEXT,
                created_at TEXT NOT NULL,
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
                input_data TEXT,
                output_data TEXT,
                error_message TEXT,
                async_handle TEXT,
                waiting_since TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS executions_handle_idx ON executions (async_handle);
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn, *args: Any) -> Any:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as exc:
                raise RepositoryError(f"SQLite operation failed: {exc}") from exc

    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.execute(query, params)
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    def _get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = self._fetchone("SELECT definition FROM workflows WHERE id = ?", workflow_id)
        return WorkflowDefinition.model_validate_json(row["definition"]) if row else None

    def _insert_queue_item(self, item: QueueItemRecord) -> bool:
        return (
            self._execute(
                f"INSERT OR IGNORE INTO queue_items ({_ITEM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                item.id,
                item.workflow_id,
                item.node_id,
                item.event_id,
                item.root_event_id,
                _ts(item.published_at),
                _ts(item.created_at),
            )
            == 1
        )

    def _insert_event(self, event: EventRecord) -> None:
        self._execute(
            f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            event.id,
            event.workflow_id,
            event.node_id,
            event.channel,
            event.type,
            json.dumps(event.data),
            event.state.value,
            event.root_event_id,
            event.execution_id,
            _ts(event.created_at),
        )

    def _route_event(self, event: EventRecord, node_ids: List[str]) -> List[QueueItemRecord]:
        savepoint = f"route_{new_id().replace('-', '')}"
        self._conn.execute(f"SAVEPOINT {savepoint}")
        try:
            now = utcnow()
            for node_id in node_ids:
                self._insert_queue_item(
                    QueueItemRecord(
                        workflow_id=event.workflow_id,
                        node_id=node_id,
                        event_id=event.id,
                        root_event_id=event.root_event_id,
                        created_at=now,
                    )
                )
            self._execute(
                "UPDATE events SET state = ? WHERE id = ? AND state = ?",
                EventState.ROUTED.value,
                event.id,
                EventState.PENDING.value,
            )
            rows = self._fetchall(
                f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE event_id = ? AND published_at IS NULL ORDER BY created_at",
                event.id,
            )
        except Exception:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
            self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        return [_row_to_item(r) for r in rows]

    def _transition(
        self, execution_id: str, target: ExecutionState, fields: Dict[str, Any]
    ) -> ExecutionRecord:
        row = self._fetchone(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?", execution_id
        )
        if row is None:
            raise InvalidTransitionError(execution_id, None, target.value)
        current = ExecutionState(row["state"])
        check_transition(execution_id, current, target, fields)

        execution = _row_to_execution(row)
        for key, value in fields.items():
            setattr(execution, key, value)
        execution.state = target
        execution.updated_at = utcnow()
        updated = self._execute(
            """
            UPDATE executions
            SET state = ?, output_data = ?, error_message = ?, async_handle = ?,
                waiting_since = ?, metadata = ?, updated_at = ?
            WHERE id = ? AND state = ?
            """,
            target.value,
            json.dumps(execution.output_data) if execution.output_data is not None else None,
            execution.error_message,
            execution.async_handle,
            _ts(execution.waiting_since),
            json.dumps(execution.metadata),
            _ts(execution.updated_at),
            execution_id,
            current.value,
        )
        if updated != 1:
            raise InvalidTransitionError(execution_id, current.value, target.value)
        return execution

    def _complete(
        self, execution_id: str, output_data: Dict[str, Any], events: Sequence[EventRecord]
    ) -> ExecutionRecord:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            execution = self._transition(
                execution_id, ExecutionState.COMPLETED, {"output_data": output_data}
            )
            for event in events:
                self._insert_event(event)
        except Exception:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")
        return execution

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await self._run(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, definition) VALUES (?, ?)",
            workflow.id,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self._run(self._get_workflow, workflow_id)

    async def get_node_metadata(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        row = await self._run(
            self._fetchone,
            "SELECT metadata FROM node_metadata WHERE workflow_id = ? AND node_id = ?",
            workflow_id,
            node_id,
        )
        return json.loads(row["metadata"]) if row else {}

    async def save_node_metadata(
        self, workflow_id: str, node_id: str, metadata: Dict[str, Any]
    ) -> None:
        await self._run(
            self._execute,
            "INSERT OR REPLACE INTO node_metadata (workflow_id, node_id, metadata) VALUES (?, ?, ?)",
            workflow_id,
            node_id,
            json.dumps(metadata),
        )

    async def create_event(self, event: EventRecord) -> EventRecord:
        await self._run(self._insert_event, event)
        return event

    async def get_event(self, event_id: str) -> EventRecord | None:
        row = await self._run(
            self._fetchone, f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = ?", event_id
        )
        return _row_to_event(row) if row else None

    async def list_events(
        self,
        workflow_id: Optional[str] = None,
        state: Optional[EventState] = None,
        root_event_id: Optional[str] = None,
    ) -> List[EventRecord]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(EventState(state).value)
        if root_event_id is not None:
            clauses.append("root_event_id = ?")
            params.append(root_event_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_EVENT_COLUMNS} FROM events{where} ORDER BY created_at, rowid",
            *params,
        )
        return [_row_to_event(r) for r in rows]

    @asynccontextmanager
    async def claim_pending_events(self, limit: int) -> AsyncIterator[_SQLiteClaim]:
        async with self._lock:
            try:
                await asyncio.to_thread(self._conn.execute, "BEGIN IMMEDIATE")
                rows = await asyncio.to_thread(
                    self._fetchall,
                    f"SELECT {_EVENT_COLUMNS} FROM events WHERE state = ? ORDER BY created_at, rowid LIMIT ?",
                    EventState.PENDING.value,
                    limit,
                )
            except sqlite3.Error as exc:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise RepositoryError(f"Failed to claim pending events: {exc}") from exc
            try:
                yield _SQLiteClaim(self, [_row_to_event(r) for r in rows])
            except BaseException:
                await asyncio.to_thread(self._conn.execute, "ROLLBACK")
                raise
            try:
                await asyncio.to_thread(self._conn.execute, "COMMIT")
            except sqlite3.Error as exc:
                raise RepositoryError(f"Failed to commit routed events: {exc}") from exc

    async def create_queue_item(self, item: QueueItemRecord) -> bool:
        return await self._run(self._insert_queue_item, item)

    async def get_queue_item(self, item_id: str) -> QueueItemRecord | None:
        row = await self._run(
            self._fetchone, f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE id = ?", item_id
        )
        return _row_to_item(row) if row else None

    async def list_queue_items(
        self, event_id: Optional[str] = None, node_id: Optional[str] = None
    ) -> List[QueueItemRecord]:
        clauses, params = [], []
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        if node_id is not None:
            clauses.append("node_id = ?")
            params.append(node_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_ITEM_COLUMNS} FROM queue_items{where} ORDER BY created_at, rowid",
            *params,
        )
        return [_row_to_item(r) for r in rows]

    async def list_unpublished_queue_items(
        self, limit: int, created_before: Optional[datetime] = None
    ) -> List[QueueItemRecord]:
        clauses, params = ["published_at IS NULL"], []
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(_ts(created_before))
        rows = await self._run(
            self._fetchall,
            f"SELECT {_ITEM_COLUMNS} FROM queue_items WHERE {' AND '.join(clauses)} ORDER BY created_at, rowid LIMIT ?",
            *params,
            limit,
        )
        return [_row_to_item(r) for r in rows]

    async def mark_queue_item_published(self, item_id: str) -> None:
        await self._run(
            self._execute,
            "UPDATE queue_items SET published_at = ? WHERE id = ? AND published_at IS NULL",
            _ts(utcnow()),
            item_id,
        )

    async def create_execution(self, execution: ExecutionRecord) -> ExecutionRecord | None:
        inserted = await self._run(
            self._execute,
            f"INSERT OR IGNORE INTO executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.node_id,
            execution.queue_item_id,
            execution.event_id,
            execution.root_event_id,
            execution.state.value,
            json.dumps(execution.input_data),
            json.dumps(execution.output_data) if execution.output_data is not None else None,
            execution.error_message,
            execution.async_handle,
            _ts(execution.waiting_since),
            json.dumps(execution.metadata),
            _ts(execution.created_at),
            _ts(execution.updated_at),
        )
        return execution if inserted == 1 else None

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?",
            execution_id,
        )
        return _row_to_execution(row) if row else None

    async def get_execution_for_queue_item(
        self, queue_item_id: str
    ) -> ExecutionRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE queue_item_id = ?",
            queue_item_id,
        )
        return _row_to_execution(row) if row else None

    async def find_execution_by_handle(self, handle: str) -> ExecutionRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE async_handle = ?",
            handle,
        )
        return _row_to_execution(row) if row else None

    async def list_executions(
        self,
        state: Optional[ExecutionState] = None,
        workflow_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        waiting_before: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        clauses, params = [], []
        if state is not None:
            clauses.append("state = ?")
            params.append(ExecutionState(state).value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if updated_before is not None:
            clauses.append("updated_at < ?")
            params.append(_ts(updated_before))
        if waiting_before is not None:
            clauses.append("COALESCE(waiting_since, updated_at) < ?")
            params.append(_ts(waiting_before))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_EXECUTION_COLUMNS} FROM executions{where} ORDER BY created_at, rowid",
            *params,
        )
        return [_row_to_execution(r) for r in rows]

    async def transition_execution(
        self, execution_id: str, target: ExecutionState, **fields: Any
    ) -> ExecutionRecord:
        return await self._run(self._transition, execution_id, target, fields)

    async def complete_execution(
        self,
        execution_id: str,
        output_data: Dict[str, Any],
        events: Sequence[EventRecord],
    ) -> ExecutionRecord:
        return await self._run(self._complete, execution_id, output_data, list(events))
