"""Delivery record state transition validation."""
from __future__ import annotations

from webhook_service.core.exceptions import InvalidStateTransitionError
from webhook_service.domain.enums import DeliveryState

DELIVERY_TRANSITIONS: dict[DeliveryState, set[DeliveryState]] = {
    DeliveryState.SCHEDULED: {DeliveryState.ATTEMPTING},
    DeliveryState.ATTEMPTING: {
        DeliveryState.DELIVERED,
        DeliveryState.SCHEDULED,
        DeliveryState.EXHAUSTED,
    },
    DeliveryState.DELIVERED: set(),
    DeliveryState.EXHAUSTED: set(),
}


def validate_delivery_transition(current: DeliveryState, new: DeliveryState) -> None:
    allowed = DELIVERY_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise InvalidStateTransitionError(
            f"Invalid delivery state transition: {current.value} → {new.value}"
        )
