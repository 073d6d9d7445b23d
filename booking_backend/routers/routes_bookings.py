from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ..deps import get_scheduler
from ..engine.scheduler import BookingScheduler
from ..schemas import (
    BookingOut,
    BookingRequest,
    BookingResult,
    BookingStatus,
    CompleteRequest,
    RescheduleRequest,
    SweepResult,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingResult, status_code=status.HTTP_201_CREATED)
def submit_booking(
    payload: BookingRequest,
    response: Response,
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    result = scheduler.submit(payload)
    if not result.created:
        # idempotent replay
        response.status_code = status.HTTP_200_OK
    return result


@router.get("", response_model=List[BookingOut])
def list_bookings(
    customer_id: Optional[str] = Query(None),
    status_: Optional[BookingStatus] = Query(None, alias="status"),
    start: Optional[datetime] = Query(None, description="windows ending after this"),
    end: Optional[datetime] = Query(None, description="windows starting before this"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    return scheduler.list_bookings(
        customer_id=customer_id,
        status=status_,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )


@router.post("/sweep", response_model=SweepResult)
def sweep_overdue(scheduler: BookingScheduler = Depends(get_scheduler)):
    return scheduler.expire_overdue()


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, scheduler: BookingScheduler = Depends(get_scheduler)):
    return scheduler.get(booking_id)


@router.patch("/{booking_id}/window", response_model=BookingOut)
def reschedule_booking(
    booking_id: str,
    payload: RescheduleRequest,
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    return scheduler.reschedule(booking_id, payload.window, payload.vehicle_id)


@router.post("/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: str, scheduler: BookingScheduler = Depends(get_scheduler)):
    return scheduler.cancel(booking_id)


@router.post("/{booking_id}/confirm", response_model=BookingOut)
def confirm_booking(
    booking_id: str, scheduler: BookingScheduler = Depends(get_scheduler)
):
    return scheduler.confirm(booking_id)


@router.post("/{booking_id}/complete", response_model=BookingOut)
def complete_booking(
    booking_id: str,
    payload: Optional[CompleteRequest] = None,
    scheduler: BookingScheduler = Depends(get_scheduler),
):
    actual = payload.actual_weight if payload is not None else None
    return scheduler.complete(booking_id, actual_weight=actual)
