"""Domain enums for webhook delivery."""
from __future__ import annotations

from enum import Enum


class DeliveryState(str, Enum):
    """Aggregate state of a (event, subscription) delivery."""

    SCHEDULED = "scheduled"
    ATTEMPTING = "attempting"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.DELIVERED, DeliveryState.EXHAUSTED)


class EventType(str, Enum):
    """Events tenants can subscribe to."""

    NEW_MESSAGE = "new_message"
    NEW_INMAIL = "new_inmail"
    MESSAGE_RECEIVED = "message.received"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    DOCUMENT_SUBMITTED = "document.submitted"


class EventClass(str, Enum):
    """Retry classes; each maps to its own backoff base."""

    REALTIME = "realtime"
    BATCH = "batch"


EVENT_CLASSES: dict[EventType, EventClass] = {
    EventType.NEW_MESSAGE: EventClass.REALTIME,
    EventType.NEW_INMAIL: EventClass.REALTIME,
    EventType.MESSAGE_RECEIVED: EventClass.REALTIME,
    EventType.CUSTOMER_CREATED: EventClass.REALTIME,
    EventType.CUSTOMER_UPDATED: EventClass.REALTIME,
    EventType.DOCUMENT_SUBMITTED: EventClass.BATCH,
}


def event_class_for(event_type: str) -> EventClass:
    """Unknown event types fall back to the realtime class."""
    try:
        return EVENT_CLASSES[EventType(event_type)]
    except ValueError:
        return EventClass.REALTIME
