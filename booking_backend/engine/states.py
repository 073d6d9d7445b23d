"""Booking lifecycle: pending -> confirmed -> completed, pending|confirmed -> cancelled."""

from typing import Dict, FrozenSet

from ..errors import InvalidStateError

PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
COMPLETED = "completed"

# Only these hold a customer's time or a vehicle's capacity
ACTIVE_STATUSES: FrozenSet[str] = frozenset({PENDING, CONFIRMED})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({COMPLETED, CANCELLED}),
    CANCELLED: frozenset(),
    COMPLETED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(booking_id: str, current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Cannot move booking from {current} to {target}",
            {"booking_id": booking_id, "current": current, "requested": target},
        )
