"""
Status event system.

Registry, estimator, solver and controller publish status changes here; the
coordination dashboard and delivery layer subscribe to the resulting streams.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import itertools
import threading
import time
import uuid


class EventType(Enum):
    """Types of engine events."""
    # Edge events
    EDGE_STATUS_CHANGED = "edge_status_changed"

    # Destination events
    DESTINATION_STATUS_CHANGED = "destination_status_changed"
    CAPACITY_WARNING = "capacity_warning"

    # Assignment events
    DEGRADED_ASSIGNMENT = "degraded_assignment"
    ASSIGNMENT_UPDATED = "assignment_updated"
    SOLVER_WARNING = "solver_warning"
    STALE_RESULT_DISCARDED = "stale_result_discarded"

    # Operator input
    RESOURCE_CLOSED = "resource_closed"
    RESOURCE_REOPENED = "resource_reopened"

    # Prediction
    BOTTLENECK_RISK = "bottleneck_risk"
    ZONE_HIGH_RISK = "zone_high_risk"

    # Lifecycle
    EVENT_STARTED = "event_started"
    EVENT_ENDED = "event_ended"


class EventPriority(Enum):
    """Priority levels for events."""
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


_counter = itertools.count()


@dataclass
class EngineEvent:
    """A status change published by an engine component."""
    event_type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    priority: EventPriority = EventPriority.NORMAL
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = field(default_factory=lambda: next(_counter))

    def __lt__(self, other: 'EngineEvent') -> bool:
        """Lower priority value first, then publication order."""
        if self.priority.value != other.priority.value:
            return self.priority.value < other.priority.value
        return self.sequence < other.sequence


# Type alias for event handlers
EventHandler = Callable[[EngineEvent], None]


class EventManager:
    """
    Publishes engine events to subscribers.

    Provides:
    - Per-type and global subscriptions
    - Deferred queue for batched delivery
    - Bounded event history for dashboards
    """

    def __init__(self, max_history: int = 1000):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._queue: List[EngineEvent] = []
        self._history: List[EngineEvent] = []
        self._max_history = max_history
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Register a handler for one event type.

        Args:
            event_type: Type of event to handle
            handler: Callback function
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for every event."""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            if event_type in self._handlers:
                self._handlers[event_type] = [
                    h for h in self._handlers[event_type] if h != handler
                ]

    def emit(self, event: EngineEvent) -> None:
        """Dispatch an event immediately."""
        self._dispatch(event)

    def publish(self, event_type: EventType, priority: EventPriority = EventPriority.NORMAL,
                **data: Any) -> EngineEvent:
        """Build and dispatch an event in one call."""
        event = EngineEvent(event_type=event_type, data=data, priority=priority)
        self._dispatch(event)
        return event

    def queue(self, event: EngineEvent) -> None:
        """Queue an event for later delivery."""
        with self._lock:
            self._queue.append(event)
            self._queue.sort()

    def process_queue(self) -> int:
        """
        Deliver all queued events in priority order.

        Returns:
            Number of events delivered
        """
        with self._lock:
            pending, self._queue = self._queue, []
        for event in pending:
            self._dispatch(event)
        return len(pending)

    def _dispatch(self, event: EngineEvent) -> None:
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history.pop(0)
            handlers = list(self._handlers.get(event.event_type, []))
            global_handlers = list(self._global_handlers)

        for handler in handlers:
            handler(event)
        for handler in global_handlers:
            handler(event)

    def get_history(self, event_type: Optional[EventType] = None,
                    limit: int = 100) -> List[EngineEvent]:
        """
        Get recent events.

        Args:
            event_type: Optional filter
            limit: Maximum number of events to return
        """
        with self._lock:
            if event_type:
                filtered = [e for e in self._history if e.event_type == event_type]
            else:
                filtered = list(self._history)
        return filtered[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()
            self._history.clear()

    @property
    def pending_count(self) -> int:
        return len(self._queue)
