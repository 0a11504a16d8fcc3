"""
Run Event Stream.

The engine publishes an ordered stream of events (node started, node
completed, run suspended, ...) instead of holding any observer-facing
state. Logs, the WebSocket route and tests subscribe to it.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import asyncio
import itertools
import logging

from durableflow.engine.state import utcnow


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted by the engine."""
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    RUN_SUSPENDED = "run_suspended"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


_sequence = itertools.count(1)


class RunEvent(BaseModel):
    """A single engine event."""
    type: EventType
    thread_id: str
    graph_id: Optional[str] = None
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    sequence: int = Field(default_factory=lambda: next(_sequence))
    timestamp: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


Subscriber = Callable[[RunEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    Fan-out of engine events to subscribers.

    Subscribers may be sync or async, global or scoped to one thread.
    A failing subscriber is logged and never affects the run.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(print)
        ...
        unsubscribe()
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._thread_subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, callback: Subscriber, thread_id: Optional[str] = None) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            callback: Called with every matching RunEvent
            thread_id: Only deliver events of this thread

        Returns:
            A function that removes the subscription
        """
        if thread_id is None:
            self._subscribers.append(callback)
        else:
            self._thread_subscribers.setdefault(thread_id, []).append(callback)

        def unsubscribe() -> None:
            if thread_id is None:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
                return
            callbacks = self._thread_subscribers.get(thread_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._thread_subscribers.pop(thread_id, None)

        return unsubscribe

    async def publish(self, event: RunEvent) -> None:
        """Deliver an event to all matching subscribers, in subscription order."""
        callbacks = list(self._subscribers) + list(self._thread_subscribers.get(event.thread_id, []))
        for callback in callbacks:
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event.type.value}: {e}")
