from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Booking
from .data import Window
from .states import ACTIVE_STATUSES


def _overlapping(window: Window, excluding_booking_id: Optional[str]):
    # [s1,e1) and [s2,e2) overlap iff s1 < e2 and s2 < e1
    stmt = select(Booking).where(
        Booking.status.in_(sorted(ACTIVE_STATUSES)),
        Booking.window_start < window.end,
        Booking.window_end > window.start,
    )
    if excluding_booking_id:
        stmt = stmt.where(Booking.booking_id != excluding_booking_id)
    return stmt


class ConflictDetector:
    """Overlap queries against active bookings.

    Run these inside the scheduler's locked transaction; on their own they
    are only a snapshot.
    """

    def find_customer_conflict(
        self,
        db: Session,
        customer_id: str,
        window: Window,
        excluding_booking_id: Optional[str] = None,
    ) -> Optional[Booking]:
        stmt = (
            _overlapping(window, excluding_booking_id)
            .where(Booking.customer_id == customer_id)
            .order_by(Booking.window_start, Booking.created_at)
            .limit(1)
        )
        return db.execute(stmt).scalars().first()

    def find_vehicle_overlap(
        self,
        db: Session,
        vehicle_id: str,
        window: Window,
        excluding_booking_id: Optional[str] = None,
    ) -> Sequence[Booking]:
        stmt = (
            _overlapping(window, excluding_booking_id)
            .where(Booking.assigned_vehicle_id == vehicle_id)
            .order_by(Booking.window_start)
        )
        return db.execute(stmt).scalars().all()
