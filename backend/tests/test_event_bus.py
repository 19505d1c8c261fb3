"""Tests for events.bus -- EventBus subscribe/broadcast behaviour.

Tests cover:
- Subscribing and receiving events
- Disposers and subscriber replacement
- History replay and its bound
- Handler error isolation
- Stats and the global singleton
"""

import threading

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import StreamEvent, StreamEventType
from tests.conftest import EventRecorder

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    context_id: str = "ctx_1",
    event_type: StreamEventType = StreamEventType.EVENT_ADDED,
    **data: object,
) -> StreamEvent:
    """Create a minimal StreamEvent for testing."""
    return StreamEvent(type=event_type, context_id=context_id, data=dict(data))


# ============================================================================
# Subscribe / broadcast
# ============================================================================


class TestSubscribeBroadcast:
    """Basic subscribe and broadcast behaviour."""

    def test_subscriber_receives_event(self, event_bus: EventBus) -> None:
        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder)

        delivered = event_bus.broadcast("ctx_1", _make_event(n=1))

        assert delivered == 1
        assert recorder.events[0].data == {"n": 1}

    def test_events_are_scoped_to_context(self, event_bus: EventBus) -> None:
        first, second = EventRecorder(), EventRecorder()
        event_bus.subscribe("ctx_1", first)
        event_bus.subscribe("ctx_2", second)

        event_bus.broadcast("ctx_1", _make_event("ctx_1"))

        assert len(first.events) == 1
        assert second.events == []

    def test_every_subscriber_receives(self, event_bus: EventBus) -> None:
        recorders = [EventRecorder() for _ in range(3)]
        for recorder in recorders:
            event_bus.subscribe("ctx_1", recorder)

        assert event_bus.broadcast("ctx_1", _make_event()) == 3
        assert all(len(r.events) == 1 for r in recorders)

    def test_broadcast_without_subscribers(self, event_bus: EventBus) -> None:
        assert event_bus.broadcast("ctx_1", _make_event()) == 0

    def test_event_order_is_preserved(self, event_bus: EventBus) -> None:
        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder)

        for n in range(5):
            event_bus.broadcast("ctx_1", _make_event(n=n))

        assert [e.data["n"] for e in recorder.events] == [0, 1, 2, 3, 4]


# ============================================================================
# Unsubscribe
# ============================================================================


class TestUnsubscribe:
    """Disposers returned by subscribe."""

    def test_disposer_stops_delivery(self, event_bus: EventBus) -> None:
        recorder = EventRecorder()
        unsubscribe = event_bus.subscribe("ctx_1", recorder)

        unsubscribe()
        event_bus.broadcast("ctx_1", _make_event())

        assert recorder.events == []
        assert event_bus.get_subscriber_count("ctx_1") == 0
        assert "ctx_1" not in event_bus.get_active_contexts()

    def test_disposer_is_idempotent(self, event_bus: EventBus) -> None:
        unsubscribe = event_bus.subscribe("ctx_1", EventRecorder())
        unsubscribe()
        unsubscribe()
        assert event_bus.get_subscriber_count("ctx_1") == 0

    def test_same_id_replaces_handler(self, event_bus: EventBus) -> None:
        old, new = EventRecorder(), EventRecorder()
        old_unsubscribe = event_bus.subscribe("ctx_1", old, subscriber_id="client")
        event_bus.subscribe("ctx_1", new, subscriber_id="client")

        # The stale disposer must not remove the replacement
        old_unsubscribe()
        event_bus.broadcast("ctx_1", _make_event())

        assert old.events == []
        assert len(new.events) == 1
        assert event_bus.get_subscriber_count("ctx_1") == 1


# ============================================================================
# History replay
# ============================================================================


class TestHistory:
    """Recent events replayed to late subscribers."""

    def test_late_subscriber_gets_history(self, event_bus: EventBus) -> None:
        event_bus.broadcast("ctx_1", _make_event(n=1))
        event_bus.broadcast("ctx_1", _make_event(n=2))

        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder)

        assert [e.data["n"] for e in recorder.events] == [1, 2]

    def test_skip_history(self, event_bus: EventBus) -> None:
        event_bus.broadcast("ctx_1", _make_event(n=1))

        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder, skip_history=True)

        assert recorder.events == []

    def test_history_is_bounded(self, event_bus: EventBus) -> None:
        total = EventBus.MAX_HISTORY_PER_CONTEXT + 20
        for n in range(total):
            event_bus.broadcast("ctx_1", _make_event(n=n))

        history = event_bus.get_event_history("ctx_1")

        assert len(history) == EventBus.MAX_HISTORY_PER_CONTEXT
        assert history[0].data["n"] == 20
        assert history[-1].data["n"] == total - 1

    def test_terminal_event_releases_history(self, event_bus: EventBus) -> None:
        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder)
        event_bus.broadcast("ctx_1", _make_event(n=1))
        event_bus.broadcast("ctx_2", _make_event("ctx_2", n=1))
        event_bus.broadcast("ctx_2", _make_event("ctx_2", StreamEventType.ERROR, code="x"))

        delivered = event_bus.broadcast(
            "ctx_1", _make_event(event_type=StreamEventType.TASK_COMPLETED)
        )

        # Live subscribers still see the terminal event
        assert delivered == 1
        assert recorder.types() == ["EVENT_ADDED", "TASK_COMPLETED"]
        assert event_bus.get_event_history("ctx_1") == []
        assert event_bus.get_event_history("ctx_2") == []
        assert event_bus.get_stats()["contexts_with_history"] == 0

    def test_clear_one_context(self, event_bus: EventBus) -> None:
        event_bus.subscribe("ctx_1", EventRecorder())
        event_bus.broadcast("ctx_1", _make_event("ctx_1"))
        event_bus.broadcast("ctx_2", _make_event("ctx_2"))

        event_bus.clear("ctx_1")

        assert event_bus.get_event_history("ctx_1") == []
        assert event_bus.get_subscriber_count("ctx_1") == 0
        assert len(event_bus.get_event_history("ctx_2")) == 1

    def test_clear_everything(self, event_bus: EventBus) -> None:
        event_bus.subscribe("ctx_1", EventRecorder())
        event_bus.broadcast("ctx_2", _make_event("ctx_2"))

        event_bus.clear()

        assert event_bus.get_stats()["active_contexts"] == 0
        assert event_bus.get_stats()["contexts_with_history"] == 0


# ============================================================================
# Error isolation
# ============================================================================


class TestHandlerErrors:
    """A failing handler never affects other subscribers."""

    def test_failing_handler_is_isolated(self, event_bus: EventBus) -> None:
        def broken(event: StreamEvent) -> None:
            raise RuntimeError("boom")

        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", broken)
        event_bus.subscribe("ctx_1", recorder)

        delivered = event_bus.broadcast("ctx_1", _make_event())

        assert delivered == 1
        assert len(recorder.events) == 1
        assert event_bus.get_stats()["handler_errors"] == 1

    def test_failing_handler_stays_subscribed(self, event_bus: EventBus) -> None:
        calls: list[StreamEvent] = []

        def flaky(event: StreamEvent) -> None:
            calls.append(event)
            raise ValueError("nope")

        event_bus.subscribe("ctx_1", flaky)
        event_bus.broadcast("ctx_1", _make_event())
        event_bus.broadcast("ctx_1", _make_event())

        assert len(calls) == 2


# ============================================================================
# Stats / concurrency / singleton
# ============================================================================


class TestStats:
    def test_stats_counters(self, event_bus: EventBus) -> None:
        event_bus.subscribe("ctx_1", EventRecorder())
        event_bus.subscribe("ctx_1", EventRecorder())
        event_bus.subscribe("ctx_2", EventRecorder())
        event_bus.broadcast("ctx_1", _make_event())

        stats = event_bus.get_stats()

        assert stats == {
            "active_contexts": 2,
            "total_subscribers": 3,
            "events_broadcast": 1,
            "handler_errors": 0,
            "contexts_with_history": 1,
        }

    def test_broadcast_from_threads(self, event_bus: EventBus) -> None:
        recorder = EventRecorder()
        event_bus.subscribe("ctx_1", recorder)

        threads = [
            threading.Thread(
                target=lambda: [event_bus.broadcast("ctx_1", _make_event()) for _ in range(50)]
            )
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert event_bus.get_stats()["events_broadcast"] == 200
        assert len(recorder.events) == 200


class TestGlobalBus:
    def test_singleton_and_reset(self) -> None:
        reset_event_bus()
        first = get_event_bus()
        assert get_event_bus() is first

        reset_event_bus()
        assert get_event_bus() is not first
