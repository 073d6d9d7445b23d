from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Direction = Literal["pickup", "dropoff"]
ServiceType = Literal["standard", "express"]
BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]


class AddressIn(BaseModel):
    # shape is checked by the scheduler so callers get InvalidAddressError
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class WindowIn(BaseModel):
    start: datetime
    end: datetime


class BookingRequest(BaseModel):
    customer_id: Annotated[str, Field(min_length=1)]
    direction: Direction
    window: WindowIn
    address: AddressIn
    estimated_weight: float = Field(description="Estimated weight in lbs")
    service_type: ServiceType = "standard"
    vehicle_id: Optional[str] = None
    auto_assign: Optional[bool] = Field(
        None, description="Defaults to the AUTO_ASSIGN setting when omitted"
    )
    idempotency_token: Optional[str] = None
    quote_id: Optional[str] = None
    shipment_id: Optional[str] = None
    notes: Optional[str] = None


class BookingResult(BaseModel):
    booking_id: str
    status: BookingStatus
    distance_miles: Optional[float] = None
    assigned_vehicle_id: Optional[str] = None
    created: bool = True


class RescheduleRequest(BaseModel):
    window: WindowIn
    vehicle_id: Optional[str] = None


class CompleteRequest(BaseModel):
    actual_weight: Optional[Annotated[float, Field(gt=0)]] = None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    customer_id: str
    quote_id: Optional[str] = None
    shipment_id: Optional[str] = None
    direction: Direction
    window_start: datetime
    window_end: datetime
    address: Dict[str, Any]
    status: BookingStatus
    service_type: ServiceType
    estimated_weight: float
    actual_weight: Optional[float] = None
    distance_miles: Optional[float] = None
    assigned_vehicle_id: Optional[str] = None
    idempotency_token: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SweepResult(BaseModel):
    expired: int
    booking_ids: list[str] = Field(default_factory=list)
