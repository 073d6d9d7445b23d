"""Shared test fixtures and helpers."""

import os

# database.py refuses to import without a URL; tests build their own engines
os.environ.setdefault("DATABASE_URL", "sqlite://")

from dataclasses import replace
from datetime import datetime, time
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

import pytest

from booking_backend.database import Base, make_engine, make_session_factory
from booking_backend.engine.postal import PostalLocationIndex
from booking_backend.engine.scheduler import BookingScheduler
from booking_backend.models import Booking, Vehicle, VehicleAssignment
from booking_backend.schemas import AddressIn, BookingRequest, WindowIn
from booking_backend.settings import settings

TZ = ZoneInfo("America/New_York")
DATA_DIR = Path(__file__).resolve().parent.parent / "data"
POSTAL_CSV = DATA_DIR / "postal_locations.csv"


def local(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=TZ)


# Monday 2026-11-09 07:00 local. Tuesday the 10th is the usual booking day.
NOW = local(2026, 11, 9, 7)


def tue(hour: int, minute: int = 0) -> datetime:
    return local(2026, 11, 10, hour, minute)


@pytest.fixture
def cfg():
    return replace(
        settings,
        TIMEZONE="America/New_York",
        DEFAULT_OPEN_TIME=time(8, 0),
        DEFAULT_CLOSE_TIME=time(17, 0),
        CLOSED_WEEKDAYS=(5, 6),
        MIN_LEAD_TIME_MIN=120,
        MAX_ADVANCE_DAYS=30,
        SLOT_LENGTH_MIN=120,
        ORIGIN_LAT=40.7439,
        ORIGIN_LNG=-74.0324,
        ROAD_FACTOR=1.0,
        AUTO_ASSIGN=True,
        MAX_COMMIT_RETRIES=3,
        RETRY_BACKOFF_SEC=0.0,
        LOCK_TIMEOUT_SEC=5.0,
    )


@pytest.fixture
def db_engine(tmp_path):
    # a file, not :memory:, so every thread sees the same database
    engine = make_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def postal_index():
    return PostalLocationIndex.from_csv(str(POSTAL_CSV))


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def scheduler(session_factory, cfg, postal_index, clock):
    return BookingScheduler(session_factory, cfg, index=postal_index, clock=clock)


@pytest.fixture
def make_vehicle(session_factory):
    def _make(
        vehicle_id: str = "V1",
        capacity_lbs: float = 1000,
        active: bool = True,
        service_area=None,
        name: Optional[str] = None,
        **extra,
    ) -> Vehicle:
        with session_factory() as db, db.begin():
            v = Vehicle(
                vehicle_id=vehicle_id,
                name=name or f"Truck {vehicle_id}",
                capacity_lbs=capacity_lbs,
                active=active,
                service_area=service_area,
                **extra,
            )
            db.add(v)
        return v

    return _make


@pytest.fixture
def add_booking(session_factory):
    """Insert a booking row directly, bypassing the scheduler."""

    def _add(
        customer_id: str = "C1",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        weight: float = 100,
        vehicle_id: Optional[str] = None,
        status: str = "pending",
        actual_weight: Optional[float] = None,
    ) -> Booking:
        with session_factory() as db, db.begin():
            b = Booking(
                customer_id=customer_id,
                direction="pickup",
                window_start=start or tue(9),
                window_end=end or tue(11),
                address=dict(ADDRESS),
                postal_code=ADDRESS["postal_code"],
                status=status,
                estimated_weight=weight,
                actual_weight=actual_weight,
                assigned_vehicle_id=vehicle_id,
            )
            if vehicle_id:
                b.assignment = VehicleAssignment(vehicle_id=vehicle_id)
            db.add(b)
        return b

    return _add


ADDRESS = {
    "line1": "1 Hudson Pl",
    "city": "Hoboken",
    "state": "NJ",
    "postal_code": "07030",
}


def make_request(
    customer_id: str = "C1",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    weight: float = 100,
    vehicle_id: Optional[str] = None,
    auto_assign: Optional[bool] = None,
    token: Optional[str] = None,
    address: Optional[dict] = None,
    direction: str = "pickup",
) -> BookingRequest:
    """Helper to create a BookingRequest."""
    return BookingRequest(
        customer_id=customer_id,
        direction=direction,
        window=WindowIn(start=start or tue(9), end=end or tue(11)),
        address=AddressIn(**(address if address is not None else ADDRESS)),
        estimated_weight=weight,
        vehicle_id=vehicle_id,
        auto_assign=auto_assign,
        idempotency_token=token,
    )
