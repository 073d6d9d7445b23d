from datetime import date, datetime, time, timezone
from uuid import uuid4

from pydantic import TypeAdapter
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Time,
    TypeDecorator,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas_extra import ServiceArea


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# Timestamp column helper (works for SQLite & Postgres).
# SQLite drops tzinfo, so values are always stored as UTC and read back aware.
class UTCDateTime(TypeDecorator):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_SERVICE_AREA = TypeAdapter(ServiceArea)


# Service area column: typed on the Python side, JSON in the database
class ServiceAreaType(TypeDecorator):
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, dict):
            value = _SERVICE_AREA.validate_python(value)
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return _SERVICE_AREA.validate_python(value)


# ================== Fleet (read-only to the engine) ==================
class Vehicle(Base):
    __tablename__ = "vehicles"
    vehicle_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    capacity_lbs: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    service_area = mapped_column(ServiceAreaType, nullable=True)
    base_postal_code: Mapped[str | None] = mapped_column(String)
    base_lat: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False))
    base_lng: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


# ================== Bookings ==================
class Booking(Base):
    __tablename__ = "bookings"
    booking_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    quote_id: Mapped[str | None] = mapped_column(String)
    shipment_id: Mapped[str | None] = mapped_column(String)
    direction: Mapped[str] = mapped_column(String, nullable=False)  # pickup | dropoff

    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    address: Mapped[dict] = mapped_column(JSON, nullable=False)
    postal_code: Mapped[str | None] = mapped_column(String, index=True)
    address_lat: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False))
    address_lng: Mapped[float | None] = mapped_column(Numeric(10, 7, asdecimal=False))
    distance_miles: Mapped[float | None] = mapped_column(Numeric(8, 2, asdecimal=False))

    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    service_type: Mapped[str] = mapped_column(
        String, nullable=False, default="standard"
    )
    estimated_weight: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=False
    )
    actual_weight: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False)
    )

    assigned_vehicle_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("vehicles.vehicle_id")
    )
    idempotency_token: Mapped[str | None] = mapped_column(String, unique=True)
    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    assignment: Mapped["VehicleAssignment | None"] = relationship(
        "VehicleAssignment",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_bookings_customer_window", "customer_id", "window_start", "window_end"),
        Index("ix_bookings_status_window", "status", "window_start", "window_end"),
    )


class VehicleAssignment(Base):
    __tablename__ = "vehicle_assignments"
    assignment_id: Mapped[str] = mapped_column(
        String, primary_key=True, default=new_id
    )
    # at most one assignment per booking
    booking_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("bookings.booking_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    vehicle_id: Mapped[str] = mapped_column(
        String, ForeignKey("vehicles.vehicle_id"), nullable=False, index=True
    )
    assigned_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    notes: Mapped[str | None] = mapped_column(Text)

    booking: Mapped[Booking] = relationship("Booking", back_populates="assignment")


# ================== Calendar & capacity reference data ==================
class AvailabilityOverride(Base):
    __tablename__ = "availability_overrides"
    override_date: Mapped[date] = mapped_column(Date, primary_key=True)
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    open_time: Mapped[time | None] = mapped_column(Time)
    close_time: Mapped[time | None] = mapped_column(Time)
    reason: Mapped[str | None] = mapped_column(Text)


class CapacityBlock(Base):
    __tablename__ = "capacity_blocks"
    block_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    max_lbs: Mapped[float] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=False
    )
    # None applies the ceiling to every vehicle
    vehicle_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("vehicles.vehicle_id")
    )
    note: Mapped[str | None] = mapped_column(Text)


class PostalLocation(Base):
    __tablename__ = "postal_locations"
    postal_code: Mapped[str] = mapped_column(String, primary_key=True)
    city: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False)
    county: Mapped[str | None] = mapped_column(String)
    latitude: Mapped[float] = mapped_column(
        Numeric(10, 7, asdecimal=False), nullable=False
    )
    longitude: Mapped[float] = mapped_column(
        Numeric(10, 7, asdecimal=False), nullable=False
    )
