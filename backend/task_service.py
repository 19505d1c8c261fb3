"""Task service: the only writer of context histories.

The TaskService creates contexts from templates, appends entries and reads
contexts back with their state recomputed from history. It coordinates:

- EventStore: append-only persistence with atomic sequence allocation
- TemplateRegistry: template lookup by id (+ version)
- EventBus: an EVENT_ADDED broadcast after every successful append

Usage:
    >>> service = TaskService(store, registry, event_bus)
    >>> context = await service.create("business_onboarding", "tenant_a", {"email": "a@b.co"})
    >>> entry = await service.append_entry(context.context_id, NewEntry(
    ...     actor=Actor.agent("data_collection"),
    ...     operation="subtask_completed",
    ...     data={"ein": "12-3456789"},
    ...     reasoning="EIN collected from the user",
    ... ))
    >>> context = await service.get_task(context.context_id)
"""

import asyncio
import uuid
import weakref
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from config import settings
from errors import (
    ContextNotFoundError,
    ContextTerminatedError,
    InputValidationError,
    TransientError,
)
from events import EventBus, StreamEvent, StreamEventType
from models.context import (
    Actor,
    ContextEntry,
    ContextRecord,
    NewEntry,
    TaskContext,
    TaskStatus,
    Trigger,
    WELL_KNOWN_STATE_KEYS,
    utc_now,
)
from models.database import EventStore
from state_computer import compute_state
from template_registry import TemplateRegistry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TASK_SERVICE_ACTOR = Actor.system("task_service")


def _generate_context_id() -> str:
    """Generate a unique context ID.

    Returns:
        A context ID in the format "ctx_<16 hex chars>"
    """
    return f"ctx_{uuid.uuid4().hex[:16]}"


class TaskService:
    """Creates, reads and appends to task contexts.

    Appends to the same context are serialized with a per-context
    asyncio.Lock; the store additionally allocates sequence numbers inside
    a write transaction, so two writers can never share a number.

    Attributes:
        store: The event store.
        templates: Template registry used by ``create``.
        event_bus: Bus receiving EVENT_ADDED after each append.
    """

    def __init__(
        self,
        store: EventStore,
        templates: TemplateRegistry,
        event_bus: EventBus,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        """Initialize the task service.

        Args:
            store: EventStore implementation.
            templates: TemplateRegistry for template lookup.
            event_bus: EventBus for broadcasting appended entries.
            retry_attempts: Retries for transient read failures
                (defaults to ``settings.store_retry_attempts``).
            retry_delay: Base backoff in seconds (defaults to
                ``settings.store_retry_delay_seconds``).
        """
        self.store = store
        self.templates = templates
        self.event_bus = event_bus
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.store_retry_attempts
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.store_retry_delay_seconds
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, context_id: str) -> asyncio.Lock:
        # Weak values: a lock lives only while some append holds or awaits it
        lock = self._locks.get(context_id)
        if lock is None:
            lock = self._locks[context_id] = asyncio.Lock()
        return lock

    async def _read_with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a read, retrying TransientError with exponential backoff."""
        for attempt in range(self.retry_attempts + 1):
            try:
                return await call()
            except TransientError as e:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "store_read_failed",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                logger.warning(
                    "store_read_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=self.retry_attempts,
                    retry_delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    def _broadcast_entry(self, entry: ContextEntry) -> None:
        self.event_bus.broadcast(
            entry.context_id,
            StreamEvent(
                type=StreamEventType.EVENT_ADDED,
                context_id=entry.context_id,
                timestamp=entry.timestamp,
                data={"entry": entry.model_dump(mode="json")},
            ),
        )

    async def create(
        self,
        template_id: str,
        tenant_id: str,
        initial_data: dict[str, Any] | None = None,
        version: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TaskContext:
        """Create a context from a template with one ``task_created`` seed entry.

        The record and the seed entry are written together; if the template
        is missing or the write fails nothing is persisted.

        Args:
            template_id: Template to instantiate.
            tenant_id: Owner of the new context.
            initial_data: Business data known up front (merged into state).
            version: Pin a template version; latest when omitted.
            metadata: Extra request metadata kept on the record.

        Returns:
            The new TaskContext with its computed state.

        Raises:
            TemplateNotFoundError: Unknown template id/version.
            InputValidationError: ``initial_data`` tries to set a state key.
        """
        initial_data = dict(initial_data or {})
        reserved = sorted(WELL_KNOWN_STATE_KEYS & initial_data.keys())
        if reserved:
            raise InputValidationError(
                f"initial_data may not set reserved keys: {', '.join(reserved)}",
                fields=reserved,
            )

        template = self.templates.load(template_id, version)
        context_id = _generate_context_id()
        now = utc_now()

        record = ContextRecord(
            context_id=context_id,
            task_template_id=template.id,
            tenant_id=tenant_id,
            created_at=now,
            template_snapshot=template.snapshot(),
            metadata={
                **(metadata or {}),
                "template_version": template.version,
                "initial_data": initial_data,
            },
        )
        seed = NewEntry(
            actor=TASK_SERVICE_ACTOR,
            operation="task_created",
            data={
                "status": TaskStatus.PENDING.value,
                "completeness": 0,
                **initial_data,
            },
            reasoning=(
                f"Task created from template {template.id}@{template.version} "
                f"for tenant {tenant_id}"
            ),
            trigger=Trigger(type="api_request", source="task_service"),
        )

        first = await self.store.create_context(
            record, seed, entry_id=uuid.uuid4().hex, timestamp=now
        )
        logger.info(
            "task_created",
            context_id=context_id,
            template_id=template.id,
            template_version=template.version,
            tenant_id=tenant_id,
        )
        self._broadcast_entry(first)

        return TaskContext(
            **record.model_dump(),
            history=[first],
            current_state=compute_state([first]),
        )

    async def get_task(self, context_id: str, tenant_id: str | None = None) -> TaskContext | None:
        """Load a context and recompute its state from history.

        Returns:
            The TaskContext, or None when the id is unknown or, with
            ``tenant_id`` given, owned by another tenant.

        Raises:
            HistoryIntegrityError: The stored history is not contiguous.
        """
        record = await self._read_with_retry(
            "get_record", lambda: self.store.get_record(context_id, tenant_id)
        )
        if record is None:
            return None
        history = await self._read_with_retry(
            "read_history", lambda: self.store.read_history(context_id)
        )
        return TaskContext(
            **record.model_dump(),
            history=history,
            current_state=compute_state(history),
        )

    async def require_task(self, context_id: str, tenant_id: str | None = None) -> TaskContext:
        """Like ``get_task`` but raises ContextNotFoundError instead of returning None."""
        context = await self.get_task(context_id, tenant_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        return context

    async def get_history(
        self, context_id: str, tenant_id: str | None = None
    ) -> list[ContextEntry]:
        """Ordered history of a context.

        Raises:
            ContextNotFoundError: Unknown id or other tenant's context.
        """
        record = await self._read_with_retry(
            "get_record", lambda: self.store.get_record(context_id, tenant_id)
        )
        if record is None:
            raise ContextNotFoundError(context_id)
        return await self._read_with_retry(
            "read_history", lambda: self.store.read_history(context_id)
        )

    async def list_tasks(
        self, tenant_id: str | None, limit: int = 50, offset: int = 0
    ) -> list[TaskContext]:
        """Contexts of a tenant, newest first, each with computed state.

        ``tenant_id=None`` lists every tenant and is meant for system use
        (startup recovery).
        """
        records = await self._read_with_retry(
            "list_records", lambda: self.store.list_records(tenant_id, limit, offset)
        )
        contexts: list[TaskContext] = []
        for record in records:
            history = await self._read_with_retry(
                "read_history",
                lambda context_id=record.context_id: self.store.read_history(context_id),
            )
            contexts.append(
                TaskContext(
                    **record.model_dump(),
                    history=history,
                    current_state=compute_state(history),
                )
            )
        return contexts

    async def append_entry(self, context_id: str, entry: NewEntry) -> ContextEntry:
        """Append one entry and broadcast it.

        Appends are never retried: a failed append surfaces to the caller
        and nothing is persisted.

        Args:
            context_id: Target context.
            entry: Actor, operation, data, reasoning and trigger.

        Returns:
            The stored entry with id, timestamp and sequence number.

        Raises:
            InputValidationError: Empty or whitespace-only reasoning.
            ContextNotFoundError: Unknown context id.
            StoreUnavailableError: The write failed.
            ContextTerminatedError: The context is already completed, failed
                or cancelled.
        """
        if not entry.reasoning.strip():
            raise InputValidationError(
                f"Entry '{entry.operation}' for {context_id} has no reasoning",
                fields=["reasoning"],
            )

        async with self._lock_for(context_id):
            # Terminal statuses are final
            history = await self.store.read_history(context_id)
            if history:
                current = compute_state(history)
                if current.is_terminal:
                    logger.info(
                        "append_refused_terminal",
                        context_id=context_id,
                        operation=entry.operation,
                        status=current.status.value,
                    )
                    raise ContextTerminatedError(context_id, current.status.value)
            stored = await self.store.append(
                context_id,
                entry,
                entry_id=uuid.uuid4().hex,
                timestamp=utc_now(),
            )

        logger.info(
            "entry_appended",
            context_id=context_id,
            sequence_number=stored.sequence_number,
            operation=stored.operation,
            actor_type=stored.actor.type.value,
            actor_id=stored.actor.id,
        )
        self._broadcast_entry(stored)
        return stored
