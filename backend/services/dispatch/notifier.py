"""
Change notifications for dispatch data

After every durable mutation the services publish a small event:
    {entity_type, entity_id, change_kind, timestamp}

Delivery is someone else's job. Subscribers (the /ws/calls broadcaster,
tests) register a callable; a failing subscriber is logged and skipped so
one bad listener cannot fail a committed mutation.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List

logger = logging.getLogger(__name__)

# Entity types
CALLS = "calls"
UNITS = "units"
PROTOCOL_ANSWERS = "call_protocol_answers"


@dataclass(frozen=True)
class ChangeEvent:
    entity_type: str
    entity_id: int
    change_kind: str          # created, updated, closed, assigned, released, evaluated
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict:
        return {
            "type": f"{self.entity_type}:update",
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "change_kind": self.change_kind,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[ChangeEvent], None]

_subscribers: List[Subscriber] = []
_subscribers_lock = threading.Lock()


def subscribe(callback: Subscriber):
    with _subscribers_lock:
        if callback not in _subscribers:
            _subscribers.append(callback)


def unsubscribe(callback: Subscriber):
    with _subscribers_lock:
        if callback in _subscribers:
            _subscribers.remove(callback)


def publish_change(entity_type: str, entity_id: int, change_kind: str) -> ChangeEvent:
    """Fan an event out to every subscriber. Never raises."""
    event = ChangeEvent(entity_type=entity_type, entity_id=entity_id, change_kind=change_kind)

    with _subscribers_lock:
        subscribers = list(_subscribers)

    for callback in subscribers:
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Change subscriber failed for {entity_type}/{entity_id} {change_kind}: {e}")

    return event
