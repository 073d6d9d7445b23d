"""Typed failures raised by the scheduling engine.

Every error carries a stable ``code``, a human readable message and a
``details`` dict with the constraint that was violated, so callers can
suggest an alternative window or vehicle. The HTTP layer maps ``status_code``
onto the response.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    code = "SCHEDULING_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# --- malformed input ---
class InvalidRequestError(SchedulingError):
    code = "INVALID_REQUEST"
    status_code = 422


class InvalidWindowError(InvalidRequestError):
    code = "INVALID_WINDOW"


class InvalidAddressError(InvalidRequestError):
    code = "INVALID_ADDRESS"


# --- calendar rules ---
class OutOfHoursError(SchedulingError):
    code = "OUT_OF_HOURS"
    status_code = 422


class InsufficientNoticeError(SchedulingError):
    code = "INSUFFICIENT_NOTICE"
    status_code = 422


class AdvanceTooFarError(SchedulingError):
    code = "ADVANCE_TOO_FAR"
    status_code = 422


# --- conflicts ---
class DoubleBookingError(SchedulingError):
    code = "DOUBLE_BOOKING"
    status_code = 409


class CapacityExceededError(SchedulingError):
    code = "CAPACITY_EXCEEDED"
    status_code = 409


class VehicleInactiveError(SchedulingError):
    code = "VEHICLE_INACTIVE"
    status_code = 409


class InvalidStateError(SchedulingError):
    code = "INVALID_STATE"
    status_code = 409


class BookingNotFoundError(SchedulingError):
    code = "BOOKING_NOT_FOUND"
    status_code = 404


class ConcurrencyConflict(SchedulingError):
    """Transient: the atomic commit lost a race. Retried by the scheduler."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 503
