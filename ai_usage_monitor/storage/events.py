"""
Change events published by the usage store.

Every subscriber gets its own bounded buffer. A subscriber that falls
behind loses its oldest events rather than slowing the store down; it can
always read the current state from the store itself.
"""

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

DEFAULT_BUFFER_SIZE = 64


class EventKind(Enum):
    USAGE_UPDATED = "usage_updated"
    COST_UPDATED = "cost_updated"
    ERROR_OCCURRED = "error_occurred"
    ERROR_CLEARED = "error_cleared"


@dataclass(frozen=True)
class StoreEvent:
    kind: EventKind
    account: str


class Subscription:
    """Bounded, lossy event buffer for one consumer."""

    def __init__(self, maxsize: int = DEFAULT_BUFFER_SIZE, on_close: Optional[Callable[["Subscription"], None]] = None):
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._events: Deque[StoreEvent] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._on_close = on_close
        self.closed = False
        self.dropped = 0

    def publish(self, event: StoreEvent) -> None:
        with self._cond:
            if self.closed:
                return
            if len(self._events) == self._events.maxlen:
                self.dropped += 1
            self._events.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[StoreEvent]:
        """Wait for the next event.

        Returns:
            The oldest buffered event, or None on timeout or after close
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._events or self.closed, timeout):
                return None
            if self._events:
                return self._events.popleft()
            return None

    def drain(self) -> List[StoreEvent]:
        """Take every buffered event without waiting."""
        with self._cond:
            events = list(self._events)
            self._events.clear()
            return events

    def close(self) -> None:
        with self._cond:
            if self.closed:
                return
            self.closed = True
            self._cond.notify_all()
        if self._on_close is not None:
            self._on_close(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBus:
    """Fan-out of store events to all open subscriptions."""

    def __init__(self):
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int = DEFAULT_BUFFER_SIZE) -> Subscription:
        subscription = Subscription(maxsize, on_close=self._unsubscribe)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, kind: EventKind, account: str) -> None:
        event = StoreEvent(kind, account)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.publish(event)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
