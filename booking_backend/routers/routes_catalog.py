from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_scheduler
from ..engine.data import Window, normalize_postal_code
from ..engine.scheduler import BookingScheduler
from ..engine.utils import to_utc
from ..models import PostalLocation, Vehicle
from ..schemas_extra import PostalLocationOut, VehicleLoadOut, VehicleOut

# Fleet and postal data are maintained by admin tooling; read-only here.
router = APIRouter(prefix="/catalog", tags=["catalog"])


# Vehicles
@router.get("/vehicles", response_model=List[VehicleOut])
def list_vehicles(active: Optional[bool] = Query(None), db: Session = Depends(get_db)):
    q = db.query(Vehicle)
    if active is not None:
        q = q.filter(Vehicle.active == active)
    return q.order_by(Vehicle.created_at.desc()).all()


@router.get("/vehicles/{vehicle_id}/load", response_model=VehicleLoadOut)
def vehicle_load(
    vehicle_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    vh: Vehicle | None = db.get(Vehicle, vehicle_id)
    if not vh:
        raise HTTPException(status_code=404, detail="Vehicle not found")

    window = Window(to_utc(start, scheduler.tz), to_utc(end, scheduler.tz))
    scheduler.calendar.check_shape(window)
    room = scheduler.ledger.headroom(db, vh, window)
    return VehicleLoadOut(
        vehicle_id=vh.vehicle_id,
        window_start=window.start,
        window_end=window.end,
        committed_lbs=room.committed_lbs,
        capacity_lbs=room.capacity_lbs,
        ceiling_lbs=room.ceiling_lbs,
        remaining_lbs=room.remaining_lbs,
        booking_ids=room.booking_ids,
    )


# Postal reference data
@router.get("/postal/{postal_code}", response_model=PostalLocationOut)
def get_postal(postal_code: str, db: Session = Depends(get_db)):
    loc: PostalLocation | None = db.get(PostalLocation, normalize_postal_code(postal_code))
    if not loc:
        raise HTTPException(status_code=404, detail="Postal code not found")
    return loc
