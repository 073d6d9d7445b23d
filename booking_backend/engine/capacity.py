import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..errors import CapacityExceededError, VehicleInactiveError
from ..models import CapacityBlock, Vehicle
from .conflicts import ConflictDetector
from .data import Window

logger = logging.getLogger(__name__)

EPS = 1e-9


@dataclass
class Headroom:
    vehicle_id: str
    capacity_lbs: float
    ceiling_lbs: float
    committed_lbs: float
    booking_ids: List[str] = field(default_factory=list)

    @property
    def remaining_lbs(self) -> float:
        return max(0.0, self.ceiling_lbs - self.committed_lbs)

    def fits(self, weight: float) -> bool:
        return self.committed_lbs + weight <= self.ceiling_lbs + EPS


def booking_weight(b) -> float:
    # actual weight replaces the estimate once recorded
    if b.actual_weight is not None:
        return float(b.actual_weight)
    return float(b.estimated_weight)


class CapacityLedger:
    def __init__(self, conflicts: Optional[ConflictDetector] = None):
        self.conflicts = conflicts or ConflictDetector()

    def active_vehicle(
        self, db: Session, vehicle_id: str, window: Optional[Window] = None
    ) -> Vehicle:
        v = db.get(Vehicle, vehicle_id)
        if v is None or not v.active:
            details = {"vehicle_id": vehicle_id, "exists": v is not None}
            if v is not None:
                details["active"] = False
                details["capacity_lbs"] = float(v.capacity_lbs)
                if window is not None:
                    details["committed_lbs"] = self.committed_weight(
                        db, vehicle_id, window
                    )
            raise VehicleInactiveError(
                f"Vehicle {vehicle_id} is not available for assignment", details
            )
        return v

    def committed_weight(
        self,
        db: Session,
        vehicle_id: str,
        window: Window,
        excluding_booking_id: Optional[str] = None,
    ) -> float:
        rows = self.conflicts.find_vehicle_overlap(
            db, vehicle_id, window, excluding_booking_id
        )
        return sum(booking_weight(b) for b in rows)

    def ceiling(self, db: Session, vehicle: Vehicle, window: Window) -> float:
        """Nominal capacity, lowered by any block overlapping the window."""
        stmt = select(CapacityBlock.max_lbs).where(
            CapacityBlock.window_start < window.end,
            CapacityBlock.window_end > window.start,
            or_(
                CapacityBlock.vehicle_id.is_(None),
                CapacityBlock.vehicle_id == vehicle.vehicle_id,
            ),
        )
        limits = [float(x) for x in db.execute(stmt).scalars().all()]
        return min([float(vehicle.capacity_lbs)] + limits)

    def headroom(
        self,
        db: Session,
        vehicle: Vehicle,
        window: Window,
        excluding_booking_id: Optional[str] = None,
    ) -> Headroom:
        rows = self.conflicts.find_vehicle_overlap(
            db, vehicle.vehicle_id, window, excluding_booking_id
        )
        return Headroom(
            vehicle_id=vehicle.vehicle_id,
            capacity_lbs=float(vehicle.capacity_lbs),
            ceiling_lbs=self.ceiling(db, vehicle, window),
            committed_lbs=sum(booking_weight(b) for b in rows),
            booking_ids=[b.booking_id for b in rows],
        )

    def check_capacity(
        self,
        db: Session,
        vehicle_id: str,
        window: Window,
        additional_weight: float,
        excluding_booking_id: Optional[str] = None,
    ) -> Headroom:
        vehicle = self.active_vehicle(db, vehicle_id, window)
        room = self.headroom(db, vehicle, window, excluding_booking_id)
        if not room.fits(additional_weight):
            logger.info(
                "Capacity exceeded on %s: committed=%.2f + %.2f > ceiling=%.2f",
                vehicle_id,
                room.committed_lbs,
                additional_weight,
                room.ceiling_lbs,
            )
            raise CapacityExceededError(
                f"Vehicle {vehicle_id} cannot take {additional_weight:g} lbs in this window",
                {
                    "vehicle_id": vehicle_id,
                    "committed_lbs": room.committed_lbs,
                    "requested_lbs": additional_weight,
                    "capacity_lbs": room.capacity_lbs,
                    "ceiling_lbs": room.ceiling_lbs,
                    "remaining_lbs": room.remaining_lbs,
                },
            )
        return room
