"""Append-only event store for task contexts.

This module provides the ``EventStore`` contract and two implementations:

    SQLiteEventStore: durable store on aiosqlite.
    InMemoryEventStore: process-local store used for ``:memory:`` and tests.

Contract every store satisfies:
    - atomic append of one entry with the next per-context sequence number
      (no two concurrent appends to the same context ever share a number)
    - ordered read of all entries of a context
    - a key-value task record per context (template snapshot, metadata)
    - tenant-scoped reads (a read for tenant A never returns tenant B's rows)
    - no update or delete of historical entries

Tables (SQLite):
    task_contexts: one record per context (id, template, tenant, snapshot).
    context_events: the ledger, UNIQUE(context_id, sequence_number); UPDATE
        and DELETE are rejected by triggers.

Usage:
    >>> from models.database import create_event_store
    >>> store = create_event_store("./data/onboarding.db")
    >>> await store.init()
    >>> entry = await store.append(context_id, new_entry, entry_id=..., timestamp=...)
"""

import asyncio
import json
import weakref
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from errors import ContextNotFoundError, StoreUnavailableError
from models.context import Actor, ContextEntry, ContextRecord, NewEntry, Trigger

logger = structlog.get_logger(__name__)


def _json_copy(value: dict[str, Any]) -> dict[str, Any]:
    """Round-trip through JSON so every store hands back detached, JSON-safe data."""
    return json.loads(json.dumps(value, default=str))


def _context_lock(
    locks: weakref.WeakValueDictionary[str, asyncio.Lock], context_id: str
) -> asyncio.Lock:
    """Per-context lock that is dropped once no writer holds or awaits it."""
    lock = locks.get(context_id)
    if lock is None:
        lock = locks[context_id] = asyncio.Lock()
    return lock


def _build_entry(
    context_id: str,
    sequence_number: int,
    entry: NewEntry,
    entry_id: str,
    timestamp: datetime,
) -> ContextEntry:
    return ContextEntry(
        entry_id=entry_id,
        context_id=context_id,
        timestamp=timestamp,
        sequence_number=sequence_number,
        actor=entry.actor,
        operation=entry.operation,
        data=_json_copy(entry.data),
        reasoning=entry.reasoning,
        trigger=Trigger.model_validate(_json_copy(entry.trigger.model_dump(mode="json"))),
    )


class EventStore(ABC):
    """Abstract append-only ledger of context entries."""

    async def init(self) -> None:
        """Prepare the store (create tables, directories). Idempotent."""

    @abstractmethod
    async def create_context(
        self,
        record: ContextRecord,
        seed: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        """Persist a new context record together with its first entry.

        Both rows are written in one unit: either both exist afterwards or
        neither does.
        """

    @abstractmethod
    async def append(
        self,
        context_id: str,
        entry: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        """Append one entry with the next sequence number of its context.

        Raises:
            ContextNotFoundError: If no record exists for ``context_id``.
            StoreUnavailableError: If the write fails; nothing is persisted.
        """

    @abstractmethod
    async def read_history(self, context_id: str) -> list[ContextEntry]:
        """All entries of a context ordered by sequence number."""

    @abstractmethod
    async def get_record(
        self, context_id: str, tenant_id: str | None = None
    ) -> ContextRecord | None:
        """The task record, or None if unknown or owned by another tenant."""

    @abstractmethod
    async def list_records(
        self,
        tenant_id: str | None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContextRecord]:
        """Records newest first. ``tenant_id=None`` lists every tenant (system use)."""

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryEventStore(EventStore):
    """Process-local store with the same contract as the SQLite store.

    Sequence allocation is serialized with one asyncio.Lock per context.
    """

    def __init__(self) -> None:
        self._records: dict[str, ContextRecord] = {}
        self._events: dict[str, list[ContextEntry]] = defaultdict(list)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def create_context(
        self,
        record: ContextRecord,
        seed: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        async with _context_lock(self._locks, record.context_id):
            if record.context_id in self._records:
                raise StoreUnavailableError(
                    f"Context {record.context_id} already exists"
                )
            first = _build_entry(record.context_id, 1, seed, entry_id, timestamp)
            self._records[record.context_id] = record.model_copy(deep=True)
            self._events[record.context_id] = [first]
        logger.debug("context_created", context_id=record.context_id, store="memory")
        return first

    async def append(
        self,
        context_id: str,
        entry: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        async with _context_lock(self._locks, context_id):
            if context_id not in self._records:
                raise ContextNotFoundError(context_id)
            events = self._events[context_id]
            stored = _build_entry(context_id, len(events) + 1, entry, entry_id, timestamp)
            events.append(stored)
        return stored

    async def read_history(self, context_id: str) -> list[ContextEntry]:
        return list(self._events.get(context_id, []))

    async def get_record(
        self, context_id: str, tenant_id: str | None = None
    ) -> ContextRecord | None:
        record = self._records.get(context_id)
        if record is None:
            return None
        if tenant_id is not None and record.tenant_id != tenant_id:
            return None
        return record.model_copy(deep=True)

    async def list_records(
        self,
        tenant_id: str | None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContextRecord]:
        records = [
            record
            for record in self._records.values()
            if tenant_id is None or record.tenant_id == tenant_id
        ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return [record.model_copy(deep=True) for record in records[offset : offset + limit]]


class SQLiteEventStore(EventStore):
    """Async SQLite event store.

    Every operation opens its own connection. Appends run inside
    ``BEGIN IMMEDIATE`` so the MAX(sequence_number)+1 read and the insert are
    one write transaction; a per-context asyncio.Lock keeps writers of the
    same process from contending for the database lock, and the UNIQUE
    constraint backs both up.

    Failures propagate: an ``aiosqlite.Error`` surfaces as
    ``StoreUnavailableError``.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str, busy_timeout_seconds: float = 5.0) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
            busy_timeout_seconds: How long a writer waits for the database lock.
        """
        self.db_path = db_path
        self.busy_timeout_seconds = busy_timeout_seconds
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _connect(self) -> aiosqlite.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        return aiosqlite.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )

    async def init(self) -> None:
        """Create tables, indexes and append-only triggers if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS task_contexts (
                        id TEXT PRIMARY KEY,
                        template_id TEXT NOT NULL,
                        tenant_id TEXT NOT NULL,
                        template_snapshot TEXT NOT NULL,
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS context_events (
                        entry_id TEXT PRIMARY KEY,
                        context_id TEXT NOT NULL,
                        sequence_number INTEGER NOT NULL,
                        timestamp TEXT NOT NULL,
                        actor TEXT NOT NULL,
                        operation TEXT NOT NULL,
                        data TEXT NOT NULL,
                        reasoning TEXT NOT NULL CHECK (length(trim(reasoning)) > 0),
                        trigger TEXT NOT NULL,
                        UNIQUE (context_id, sequence_number),
                        FOREIGN KEY (context_id) REFERENCES task_contexts(id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_task_contexts_tenant
                    ON task_contexts(tenant_id, created_at DESC)
                """)
                await db.execute("""
                    CREATE TRIGGER IF NOT EXISTS context_events_no_update
                    BEFORE UPDATE ON context_events
                    BEGIN
                        SELECT RAISE(ABORT, 'context_events is append-only');
                    END
                """)
                await db.execute("""
                    CREATE TRIGGER IF NOT EXISTS context_events_no_delete
                    BEFORE DELETE ON context_events
                    BEGIN
                        SELECT RAISE(ABORT, 'context_events is append-only');
                    END
                """)
            logger.info("event_store_initialized", db_path=self.db_path)
        except aiosqlite.Error as e:
            logger.error("event_store_init_failed", db_path=self.db_path, error=str(e))
            raise StoreUnavailableError(f"Event store init failed: {e}") from e

    async def _insert_entry(
        self, db: aiosqlite.Connection, stored: ContextEntry
    ) -> None:
        await db.execute(
            """
            INSERT INTO context_events
                (entry_id, context_id, sequence_number, timestamp, actor,
                 operation, data, reasoning, trigger)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.entry_id,
                stored.context_id,
                stored.sequence_number,
                stored.timestamp.isoformat(),
                stored.actor.model_dump_json(),
                stored.operation,
                json.dumps(stored.data),
                stored.reasoning,
                stored.trigger.model_dump_json(),
            ),
        )

    async def create_context(
        self,
        record: ContextRecord,
        seed: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        first = _build_entry(record.context_id, 1, seed, entry_id, timestamp)
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await db.execute(
                        """
                        INSERT INTO task_contexts
                            (id, template_id, tenant_id, template_snapshot, metadata, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.context_id,
                            record.task_template_id,
                            record.tenant_id,
                            json.dumps(record.template_snapshot),
                            json.dumps(record.metadata, default=str),
                            record.created_at.isoformat(),
                        ),
                    )
                    await self._insert_entry(db, first)
                    await db.execute("COMMIT")
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
        except aiosqlite.Error as e:
            logger.error(
                "context_create_failed",
                context_id=record.context_id,
                error=str(e),
            )
            raise StoreUnavailableError(f"Failed to create context: {e}") from e

        logger.debug("context_created", context_id=record.context_id, store="sqlite")
        return first

    async def append(
        self,
        context_id: str,
        entry: NewEntry,
        *,
        entry_id: str,
        timestamp: datetime,
    ) -> ContextEntry:
        async with _context_lock(self._locks, context_id):
            try:
                async with self._connect() as db:
                    await db.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = await db.execute(
                            "SELECT 1 FROM task_contexts WHERE id = ?",
                            (context_id,),
                        )
                        if await cursor.fetchone() is None:
                            raise ContextNotFoundError(context_id)
                        cursor = await db.execute(
                            """
                            SELECT COALESCE(MAX(sequence_number), 0) + 1
                            FROM context_events WHERE context_id = ?
                            """,
                            (context_id,),
                        )
                        row = await cursor.fetchone()
                        next_sequence = int(row[0]) if row else 1
                        stored = _build_entry(
                            context_id, next_sequence, entry, entry_id, timestamp
                        )
                        await self._insert_entry(db, stored)
                        await db.execute("COMMIT")
                    except BaseException:
                        await db.execute("ROLLBACK")
                        raise
            except aiosqlite.Error as e:
                logger.error(
                    "entry_append_failed",
                    context_id=context_id,
                    operation=entry.operation,
                    error=str(e),
                )
                raise StoreUnavailableError(f"Failed to append entry: {e}") from e
        return stored

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> ContextEntry:
        return ContextEntry(
            entry_id=row["entry_id"],
            context_id=row["context_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            sequence_number=row["sequence_number"],
            actor=Actor.model_validate_json(row["actor"]),
            operation=row["operation"],
            data=json.loads(row["data"]),
            reasoning=row["reasoning"],
            trigger=Trigger.model_validate_json(row["trigger"]),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> ContextRecord:
        return ContextRecord(
            context_id=row["id"],
            task_template_id=row["template_id"],
            tenant_id=row["tenant_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            template_snapshot=json.loads(row["template_snapshot"]),
            metadata=json.loads(row["metadata"]),
        )

    async def read_history(self, context_id: str) -> list[ContextEntry]:
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT * FROM context_events
                    WHERE context_id = ?
                    ORDER BY sequence_number ASC
                    """,
                    (context_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("history_read_failed", context_id=context_id, error=str(e))
            raise StoreUnavailableError(f"Failed to read history: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    async def get_record(
        self, context_id: str, tenant_id: str | None = None
    ) -> ContextRecord | None:
        query = "SELECT * FROM task_contexts WHERE id = ?"
        params: tuple[Any, ...] = (context_id,)
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params = (context_id, tenant_id)
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("record_read_failed", context_id=context_id, error=str(e))
            raise StoreUnavailableError(f"Failed to read task record: {e}") from e
        return self._row_to_record(row) if row is not None else None

    async def list_records(
        self,
        tenant_id: str | None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContextRecord]:
        if tenant_id is None:
            query = "SELECT * FROM task_contexts ORDER BY created_at DESC LIMIT ? OFFSET ?"
            params: tuple[Any, ...] = (limit, offset)
        else:
            query = """
                SELECT * FROM task_contexts
                WHERE tenant_id = ?
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
            """
            params = (tenant_id, limit, offset)
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("record_list_failed", tenant_id=tenant_id, error=str(e))
            raise StoreUnavailableError(f"Failed to list task records: {e}") from e
        return [self._row_to_record(row) for row in rows]


def create_event_store(database_path: str) -> EventStore:
    """Pick the store implementation for a configured database path."""
    if database_path == ":memory:":
        return InMemoryEventStore()
    return SQLiteEventStore(database_path)
