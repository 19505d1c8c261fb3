"""In-process event bus for task context pub/sub.

This module provides an EventBus class that fans events for a task context
out to the handlers subscribed to that context (stream gateways, tests,
in-process observers).

Delivery guarantee: at-most-once, single process, no replay across
restarts. A handler that raises is logged and skipped; it never affects the
other handlers or the broadcaster. Multi-instance fan-out would need an
external broker and is out of scope for this bus.
"""

import threading
import uuid
from collections import defaultdict, deque
from collections.abc import Callable
from typing import Any

import structlog

from events.types import TERMINAL_EVENT_TYPES, StreamEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[StreamEvent], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """Synchronous pub/sub bus keyed by context id.

    Handlers are plain callables invoked directly by ``broadcast`` in the
    broadcaster's thread. Handlers that need to hand work to a coroutine
    (e.g. an SSE response) push onto their own ``asyncio.Queue``.

    Event History:
        The most recent ``MAX_HISTORY_PER_CONTEXT`` events of every context
        are kept and replayed to a new subscriber unless it passes
        ``skip_history=True``. Subscribers that load a full snapshot first
        (the stream gateway) skip replay to avoid duplicates. The buffer of a
        context is dropped once TASK_COMPLETED or ERROR is broadcast.

    Thread Safety:
        All registry operations use a threading.Lock. ``broadcast`` iterates
        over a snapshot of the subscribers taken under the lock, so handlers
        may subscribe or unsubscribe while being called.

    Usage:
        >>> bus = EventBus()
        >>> received = []
        >>> unsubscribe = bus.subscribe("ctx_123", received.append)
        >>> bus.broadcast("ctx_123", StreamEvent(
        ...     type=StreamEventType.EVENT_ADDED,
        ...     context_id="ctx_123",
        ...     data={"entry": {...}},
        ... ))
        >>> unsubscribe()

    Attributes:
        _subscribers: context_id -> {subscriber_id: handler}
        _history: context_id -> bounded deque of recent events
        _lock: Threading lock for the registry
    """

    # Maximum number of events to retain per context for replay on subscribe.
    MAX_HISTORY_PER_CONTEXT = 100

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, dict[str, EventHandler]] = defaultdict(dict)
        self._history: dict[str, deque[StreamEvent]] = defaultdict(
            lambda: deque(maxlen=self.MAX_HISTORY_PER_CONTEXT)
        )
        self._lock = threading.Lock()
        self._events_broadcast = 0
        self._handler_errors = 0
        logger.info("event_bus_initialized")

    def subscribe(
        self,
        context_id: str,
        handler: EventHandler,
        subscriber_id: str | None = None,
        skip_history: bool = False,
    ) -> Unsubscribe:
        """Register a handler for a context's events.

        Args:
            context_id: The context to subscribe to.
            handler: Callable invoked with each StreamEvent.
            subscriber_id: Optional stable id; re-subscribing with the same id
                replaces the previous handler.
            skip_history: Do not replay the recent-event buffer.

        Returns:
            A disposer that removes this subscription. Calling it more than
            once is a no-op.
        """
        subscriber_id = subscriber_id or f"sub_{uuid.uuid4().hex[:12]}"

        with self._lock:
            self._subscribers[context_id][subscriber_id] = handler
            subscriber_count = len(self._subscribers[context_id])
            replay = [] if skip_history else list(self._history.get(context_id, ()))

        for event in replay:
            self._deliver(handler, event, subscriber_id)

        logger.info(
            "subscriber_added",
            context_id=context_id,
            subscriber_id=subscriber_id,
            subscriber_count=subscriber_count,
            history_replayed=len(replay),
        )

        def unsubscribe() -> None:
            self._unsubscribe(context_id, subscriber_id, handler)

        return unsubscribe

    def _unsubscribe(self, context_id: str, subscriber_id: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(context_id)
            # Only remove if the id still maps to this handler (it may have been replaced)
            if not handlers or handlers.get(subscriber_id) is not handler:
                return
            del handlers[subscriber_id]
            subscriber_count = len(handlers)
            if not handlers:
                del self._subscribers[context_id]

        logger.info(
            "subscriber_removed",
            context_id=context_id,
            subscriber_id=subscriber_id,
            subscriber_count=subscriber_count,
        )

    def _deliver(self, handler: EventHandler, event: StreamEvent, subscriber_id: str) -> bool:
        try:
            handler(event)
        except Exception as e:
            with self._lock:
                self._handler_errors += 1
            logger.warning(
                "event_handler_failed",
                context_id=event.context_id,
                subscriber_id=subscriber_id,
                event_type=event.type.value,
                error=str(e),
            )
            return False
        return True

    def broadcast(self, context_id: str, event: StreamEvent) -> int:
        """Deliver an event to every current subscriber of a context.

        Args:
            context_id: The context the event belongs to.
            event: The event to deliver.

        Returns:
            Number of handlers that accepted the event without raising.
        """
        with self._lock:
            if event.type in TERMINAL_EVENT_TYPES:
                # Nothing follows a terminal event; free the replay buffer
                self._history.pop(context_id, None)
            else:
                self._history[context_id].append(event)
            self._events_broadcast += 1
            subscribers = list(self._subscribers.get(context_id, {}).items())

        delivered = sum(
            1 for subscriber_id, handler in subscribers
            if self._deliver(handler, event, subscriber_id)
        )

        logger.debug(
            "event_broadcast",
            context_id=context_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            delivered=delivered,
        )
        return delivered

    def get_event_history(self, context_id: str) -> list[StreamEvent]:
        """Recent events of a context, oldest first."""
        with self._lock:
            return list(self._history.get(context_id, ()))

    def get_subscriber_count(self, context_id: str) -> int:
        """Get the number of subscribers for a context."""
        with self._lock:
            return len(self._subscribers.get(context_id, {}))

    def get_active_contexts(self) -> list[str]:
        """Get list of contexts with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def get_stats(self) -> dict[str, Any]:
        """Counters for health and debugging endpoints."""
        with self._lock:
            return {
                "active_contexts": len(self._subscribers),
                "total_subscribers": sum(len(h) for h in self._subscribers.values()),
                "events_broadcast": self._events_broadcast,
                "handler_errors": self._handler_errors,
                "contexts_with_history": len(self._history),
            }

    def clear(self, context_id: str | None = None) -> None:
        """Drop subscribers and history for one context, or for all of them."""
        with self._lock:
            if context_id is None:
                self._subscribers.clear()
                self._history.clear()
            else:
                self._subscribers.pop(context_id, None)
                self._history.pop(context_id, None)
        logger.debug("event_bus_cleared", context_id=context_id)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe. Core components receive the bus by
    injection; this accessor is for app wiring and tests.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
