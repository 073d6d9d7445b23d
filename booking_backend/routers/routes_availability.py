from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_scheduler
from ..engine.scheduler import BookingScheduler
from ..schemas import AddressIn
from ..schemas_extra import AvailableWindowsOut, DayHoursOut

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("/hours/{day}", response_model=DayHoursOut)
def get_hours(
    day: date,
    db: Session = Depends(get_db),
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    h = scheduler.calendar.resolve_hours(db, day)
    return DayHoursOut(
        date=h.date,
        open=h.open,
        close=h.close,
        closed=h.closed,
        reason=h.reason,
        source=h.source,
    )


@router.get("/windows", response_model=AvailableWindowsOut)
def get_windows(
    day: date = Query(..., alias="date"),
    weight: float = Query(..., gt=0, description="Estimated weight in lbs"),
    postal_code: Optional[str] = Query(None),
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    address = None
    if postal_code or (latitude is not None and longitude is not None):
        address = AddressIn(
            postal_code=postal_code, latitude=latitude, longitude=longitude
        )
    return scheduler.available_windows(day, weight, address)
