"""Server-sent events gateway for real-time context streaming.

This module streams task context events to clients over SSE. Each
connection authorises once, subscribes to the event bus for its context and
forwards events as ``event: <type>`` frames:

    event: CONTEXT_INITIALIZED      full context snapshot (always first)
    event: EVENT_ADDED / UI_REQUEST / TASK_COMPLETED / ERROR
    : heartbeat                     comment line after idle periods

Events broadcast while a client is disconnected are not buffered; a
reconnecting client gets a fresh snapshot instead.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, status
from fastapi.responses import StreamingResponse

from api.routes import require_tenant
from config import settings
from errors import ContextNotFoundError
from events import EventBus, StreamEvent, StreamEventType, TERMINAL_EVENT_TYPES, Unsubscribe
from models.context import TaskContext

if TYPE_CHECKING:
    from task_service import TaskService

logger = structlog.get_logger(__name__)

stream_router = APIRouter()

_task_service: "TaskService | None" = None
_event_bus: EventBus | None = None


def set_stream_dependencies(task_service: "TaskService", event_bus: EventBus) -> None:
    """Set the task service and event bus used by SSE connections."""
    global _task_service, _event_bus
    _task_service = task_service
    _event_bus = event_bus
    logger.info("stream_dependencies_configured")


def get_stream_dependencies() -> "tuple[TaskService, EventBus]":
    """Return configured dependencies for SSE connections."""
    if _task_service is None or _event_bus is None:
        raise RuntimeError(
            "Stream dependencies not configured. "
            "Call set_stream_dependencies() during startup."
        )
    return _task_service, _event_bus


def format_sse(event: StreamEvent) -> str:
    """Encode one event as an SSE frame."""
    return f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"


HEARTBEAT_FRAME = ": heartbeat\n\n"


class ContextStream:
    """One SSE connection for one (context, tenant).

    Subscribes *before* loading the snapshot so nothing appended in between
    is lost; EVENT_ADDED frames already covered by the snapshot are dropped
    by sequence number.

    Usage:
        >>> stream = ContextStream(task_service, bus, context_id, tenant_id)
        >>> await stream.open()           # raises ContextNotFoundError
        >>> async for frame in stream.frames():
        ...     send(frame)
    """

    def __init__(
        self,
        task_service: "TaskService",
        event_bus: EventBus,
        context_id: str,
        tenant_id: str,
        heartbeat_seconds: float | None = None,
    ) -> None:
        self.task_service = task_service
        self.event_bus = event_bus
        self.context_id = context_id
        self.tenant_id = tenant_id
        self.heartbeat_seconds = (
            heartbeat_seconds if heartbeat_seconds is not None else settings.sse_heartbeat_seconds
        )
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._snapshot: TaskContext | None = None

    def _handle(self, event: StreamEvent) -> None:
        # asyncio.Queue is not thread-safe; hop onto the stream's loop when
        # the broadcaster runs elsewhere.
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            self._queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def open(self) -> TaskContext:
        """Authorise, subscribe and load the snapshot.

        Raises:
            ContextNotFoundError: Unknown context or owned by another tenant.
        """
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.event_bus.subscribe(
            self.context_id,
            self._handle,
            skip_history=True,
        )
        try:
            context = await self.task_service.get_task(self.context_id, self.tenant_id)
        except BaseException:
            self.close()
            raise
        if context is None:
            self.close()
            logger.warning(
                "stream_unauthorized",
                context_id=self.context_id,
                tenant_id=self.tenant_id,
            )
            raise ContextNotFoundError(self.context_id)

        self._snapshot = context
        logger.info("stream_opened", context_id=self.context_id, tenant_id=self.tenant_id)
        return context

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("stream_closed", context_id=self.context_id)

    def _already_sent(self, event: StreamEvent) -> bool:
        if event.type != StreamEventType.EVENT_ADDED or self._snapshot is None:
            return False
        sequence = event.data.get("entry", {}).get("sequence_number", 0)
        return sequence <= self._snapshot.current_state.last_sequence_number

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until the context ends or the client goes away."""
        if self._snapshot is None:
            raise RuntimeError("ContextStream.open() must be awaited first")

        try:
            yield format_sse(
                StreamEvent(
                    type=StreamEventType.CONTEXT_INITIALIZED,
                    context_id=self.context_id,
                    data={"context": self._snapshot.model_dump(mode="json")},
                )
            )
            if self._snapshot.is_terminal:
                return

            while True:
                try:
                    event = await asyncio.wait_for(
                        self._queue.get(), timeout=self.heartbeat_seconds
                    )
                except TimeoutError:
                    yield HEARTBEAT_FRAME
                    continue

                if self._already_sent(event):
                    logger.debug(
                        "stream_event_skipped_duplicate",
                        context_id=self.context_id,
                        event_type=event.type.value,
                    )
                    continue

                yield format_sse(event)
                logger.debug(
                    "stream_event_sent",
                    context_id=self.context_id,
                    event_type=event.type.value,
                )
                if event.type in TERMINAL_EVENT_TYPES:
                    break
        finally:
            self.close()


@stream_router.get(
    "/api/tasks/{context_id}/stream",
    summary="Stream context events",
    description="Server-sent events for one task context.",
    response_class=StreamingResponse,
)
async def stream_context(
    context_id: Annotated[str, Path(description="The context ID")],
    tenant_id: Annotated[str, Depends(require_tenant)],
) -> StreamingResponse:
    """Open an SSE stream for a context owned by the calling tenant.

    Raises:
        HTTPException: 404 if the context is unknown or owned by another tenant.
    """
    task_service, event_bus = get_stream_dependencies()
    stream = ContextStream(task_service, event_bus, context_id, tenant_id)
    try:
        await stream.open()
    except ContextNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e

    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
