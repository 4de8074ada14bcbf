"""Event system for workflow observability.

This package provides the event infrastructure through which the phase
machine, task graph executor and tool runtime report what they do. The
event system is an async pub/sub built on asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - WorkflowEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventBus, EventType, WorkflowEvent
    >>>
    >>> bus = EventBus()
    >>> queue = bus.subscribe("proj_123")
    >>> await bus.publish(WorkflowEvent(
    ...     type=EventType.LANE_SELECTED,
    ...     session_id="proj_123",
    ...     data={"lane": "quick"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    WorkflowEvent,
)

__all__ = [
    "EventType",
    "WorkflowEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
