"""Event system for task context streaming.

This package provides the event infrastructure between the task service /
orchestrator and connected clients. It is a synchronous in-process pub/sub:
``subscribe`` returns a disposer, ``broadcast`` calls every handler of the
context directly.

Key Components:
    - StreamEventType: Enum of all event types pushed to clients
    - StreamEvent: Pydantic model for events flowing through the system
    - EventBus: Pub/sub implementation keyed by context id

Usage:
    >>> from events import EventBus, StreamEvent, StreamEventType
    >>>
    >>> bus = EventBus()
    >>> unsubscribe = bus.subscribe("ctx_123", print)
    >>> bus.broadcast("ctx_123", StreamEvent(
    ...     type=StreamEventType.TASK_COMPLETED,
    ...     context_id="ctx_123",
    ...     data={"completeness": 100},
    ... ))
    >>> unsubscribe()

Event Flow:
    1. TaskService.append_entry persists an entry and broadcasts EVENT_ADDED
    2. The orchestrator broadcasts UI_REQUEST / TASK_COMPLETED / ERROR
    3. api.streaming.ContextStream queues events per SSE client
    4. Clients receive ``event: <type>`` frames
"""

from events.bus import (
    EventBus,
    EventHandler,
    Unsubscribe,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    StreamEvent,
    StreamEventType,
    TERMINAL_EVENT_TYPES,
)

__all__ = [
    # Event types
    "StreamEventType",
    "StreamEvent",
    "TERMINAL_EVENT_TYPES",
    # Event bus
    "EventBus",
    "EventHandler",
    "Unsubscribe",
    "get_event_bus",
    "reset_event_bus",
]
