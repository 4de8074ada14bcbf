"""Async event bus for workflow pub/sub communication.

This module provides an EventBus class that lets engine components
(phase machine, task graph executor, tool runtime) publish events that
host observers consume asynchronously.

The event bus is thread-safe and supports:
- Multiple subscribers per session
- Async event delivery via asyncio.Queue
- Buffering of events published before the first subscriber
- Session lifecycle management (close session terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from config import settings
from events.types import EventType, WorkflowEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for workflow events.

    Subscriptions are keyed by session id. Events published before any
    subscriber connects are buffered and delivered to the first subscriber.
    Every published event is also kept in a bounded per-session history.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock so the bus
        can be shared by components running on executor threads.

    Attributes:
        _subscribers: Dict mapping session_id to list of subscriber queues
        _event_buffer: Dict mapping session_id to list of buffered events
        _event_history: Dict mapping session_id to retained events
        _lock: Threading lock for the registries
    """

    def __init__(self, max_history_per_session: int | None = None) -> None:
        """Initialize an empty event bus.

        Args:
            max_history_per_session: Events retained per session for replay.
                Defaults to settings.max_events_per_session.
        """
        self._subscribers: dict[str, list[asyncio.Queue[WorkflowEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._event_history: dict[str, list[WorkflowEvent]] = defaultdict(list)
        self._max_history = max_history_per_session or settings.max_events_per_session
        self._lock = threading.Lock()
        logger.debug("event_bus_initialized", max_history=self._max_history)

    def subscribe(self, session_id: str) -> asyncio.Queue[WorkflowEvent]:
        """Subscribe to events for a session.

        Buffered events for the session are delivered to the new queue
        immediately and the buffer is cleared.

        Args:
            session_id: The session to subscribe to

        Returns:
            A queue that receives WorkflowEvent objects for this session
        """
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        buffered_events: list[WorkflowEvent] = []

        with self._lock:
            self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers[session_id])
            if session_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(session_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[WorkflowEvent]) -> None:
        """Remove a queue from a session. Unknown queues are a no-op."""
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues or queue not in queues:
                logger.debug("unsubscribe_queue_not_found", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_id]

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish an event to all subscribers for its session.

        If the session has no subscribers yet the event is buffered.

        Args:
            event: The WorkflowEvent to publish
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self._max_history:
                    self._event_history[event.session_id] = history[-self._max_history:]

            subscribers = list(self._subscribers.get(event.session_id, []))
            if not subscribers:
                self._event_buffer[event.session_id].append(event)
                return

        # Bounded wait so a stalled consumer cannot block the engine
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, session_id: str) -> list[WorkflowEvent]:
        """Return the retained events for a session in chronological order."""
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Close a session and notify all subscribers.

        Each subscriber queue receives a SESSION_CLOSED sentinel, then the
        subscriptions and buffered events are dropped. History is preserved.

        Args:
            session_id: The session to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(session_id, [])
            self._event_buffer.pop(session_id, None)

        for queue in queues_to_signal:
            await queue.put(
                WorkflowEvent(
                    type=EventType.SESSION_CLOSED,
                    session_id=session_id,
                    data={"reason": "session_closed"},
                )
            )

        logger.info(
            "event_session_closed",
            session_id=session_id,
            subscribers_removed=len(queues_to_signal),
        )

    def get_subscriber_count(self, session_id: str) -> int:
        """Get the number of subscribers for a session."""
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        """Drop the retained history for a session."""
        with self._lock:
            self._event_history.pop(session_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
