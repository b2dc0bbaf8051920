"""
In-process publish/subscribe bus for ledger notifications.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    VOTE_CAST = "vote_cast"
    BATCH_FLUSHED = "batch_flushed"
    VOTE_CONFIRMED = "vote_confirmed"
    VOTE_REJECTED = "vote_rejected"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    RESULTS_UPDATED = "results_updated"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    ELECTION_CLOSED = "election_closed"


@dataclass
class Event:
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out; a failing subscriber never affects the publisher"""

    def __init__(self):
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Optional[EventType], callback: Subscriber) -> Callable[[], None]:
        """Register a callback; event_type None receives every event. Returns an unsubscribe handle."""
        with self._lock:
            self._subscribers[event_type].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(event_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, event_type: EventType, **payload) -> Event:
        event = Event(event_type=event_type, payload=payload)

        with self._lock:
            callbacks = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(None, []))

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber failed while handling {event_type.value}")

        return event

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        with self._lock:
            if event_type is None:
                return sum(len(v) for v in self._subscribers.values())
            return len(self._subscribers.get(event_type, []))
