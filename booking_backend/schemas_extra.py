# booking_backend/schemas_extra.py
from datetime import date, datetime, time
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ================== Service area (typed replacement for the JSON blob) ==================
class PostalCodeArea(BaseModel):
    kind: Literal["postal_codes"] = "postal_codes"
    postal_codes: Annotated[List[str], Field(min_length=1)]


class RadiusArea(BaseModel):
    kind: Literal["radius"] = "radius"
    max_radius_miles: Annotated[float, Field(gt=0)]


ServiceArea = Annotated[Union[PostalCodeArea, RadiusArea], Field(discriminator="kind")]


# ================== Catalog (read-only) ==================
class VehicleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vehicle_id: str
    name: str
    capacity_lbs: float
    active: bool
    service_area: Optional[ServiceArea] = None
    base_postal_code: Optional[str] = None
    base_lat: Optional[float] = None
    base_lng: Optional[float] = None
    created_at: datetime


class VehicleLoadOut(BaseModel):
    vehicle_id: str
    window_start: datetime
    window_end: datetime
    committed_lbs: float
    capacity_lbs: float
    ceiling_lbs: float
    remaining_lbs: float
    booking_ids: List[str] = Field(default_factory=list)


class PostalLocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    postal_code: str
    city: str
    state: str
    county: Optional[str] = None
    latitude: float
    longitude: float


# ================== Availability ==================
class DayHoursOut(BaseModel):
    date: date
    open: time
    close: time
    closed: bool
    reason: Optional[str] = None
    source: Literal["override", "default"]


class AssignedVehicleOut(BaseModel):
    vehicle_id: str
    name: str
    capacity_lbs: float


class AvailableWindowOut(BaseModel):
    start: datetime
    end: datetime
    remaining_capacity_lbs: float
    assigned_vehicle: AssignedVehicleOut


class AvailableWindowsOut(BaseModel):
    hours: DayHoursOut
    distance_miles: Optional[float] = None
    windows: List[AvailableWindowOut] = Field(default_factory=list)
