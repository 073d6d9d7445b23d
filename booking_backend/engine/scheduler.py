"""Booking orchestration: validate, detect conflicts, check capacity, commit.

Every write runs as one unit: the resource keys it touches (customer,
vehicle(s), idempotency token, booking) are locked in sorted order, then the
checks and the write share a single database transaction. Losing a race
surfaces as ``ConcurrencyConflict`` and the whole sequence is retried.
"""

import logging
import math
import re
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import (
    BookingNotFoundError,
    CapacityExceededError,
    ConcurrencyConflict,
    DoubleBookingError,
    InvalidAddressError,
    InvalidRequestError,
    InvalidStateError,
)
from ..models import Booking, Vehicle, VehicleAssignment, utcnow
from ..schemas import AddressIn, BookingRequest, BookingResult, SweepResult, WindowIn
from ..schemas_extra import (
    AssignedVehicleOut,
    AvailableWindowOut,
    AvailableWindowsOut,
    DayHoursOut,
)
from ..settings import Settings
from .availability import AvailabilityCalendar
from .capacity import CapacityLedger, Headroom
from .conflicts import ConflictDetector
from .data import Window
from .distance import DistanceResolver
from .locks import (
    KeyedLocks,
    advisory_lock,
    booking_key,
    customer_key,
    token_key,
    vehicle_key,
)
from .postal import PostalLocationIndex
from .states import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    PENDING,
    ensure_transition,
)
from .utils import to_utc

logger = logging.getLogger(__name__)

ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")

# sqlstates: serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


def _is_transient(exc: OperationalError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in TRANSIENT_SQLSTATES:
        return True
    msg = str(orig).lower()
    return "locked" in msg or "busy" in msg


def _auto_note(v: Vehicle, room: Headroom) -> str:
    return (
        f"Auto-assigned vehicle {v.name} "
        f"with {room.remaining_lbs:g} lbs remaining capacity"
    )


def _result(b: Booking, created: bool) -> BookingResult:
    return BookingResult(
        booking_id=b.booking_id,
        status=b.status,
        distance_miles=b.distance_miles,
        assigned_vehicle_id=b.assigned_vehicle_id,
        created=created,
    )


class BookingScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        cfg: Settings,
        index: Optional[PostalLocationIndex] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.cfg = cfg
        self.tz = ZoneInfo(cfg.TIMEZONE)
        self.index = index if index is not None else PostalLocationIndex({})
        self.calendar = AvailabilityCalendar(cfg)
        self.distance = DistanceResolver(
            self.index, cfg.ORIGIN_LAT, cfg.ORIGIN_LNG, cfg.ROAD_FACTOR
        )
        self.conflicts = ConflictDetector()
        self.ledger = CapacityLedger(self.conflicts)
        self.locks = locks or KeyedLocks(timeout=cfg.LOCK_TIMEOUT_SEC)
        self.clock = clock or utcnow

    # ================== plumbing ==================
    def now(self) -> datetime:
        return to_utc(self.clock(), self.tz)

    def window_of(self, w: WindowIn) -> Window:
        return Window(to_utc(w.start, self.tz), to_utc(w.end, self.tz))

    @contextmanager
    def _locked_tx(self, keys: Sequence[str]) -> Iterator[Session]:
        """Hold the keyed locks around one transaction; commit before release."""
        with self.locks.hold(keys) as held:
            try:
                with self.session_factory() as db, db.begin():
                    advisory_lock(db, held)
                    yield db
            except IntegrityError as exc:
                raise ConcurrencyConflict(
                    "Write collided with a concurrent change",
                    {"reason": "integrity", "keys": held},
                ) from exc
            except OperationalError as exc:
                if not _is_transient(exc):
                    logger.exception("Commit failed while holding %s", held)
                    raise
                raise ConcurrencyConflict(
                    "Database lock contention", {"reason": "locked", "keys": held}
                ) from exc

    def _with_retries(self, op: str, fn: Callable[[], Any]) -> Any:
        attempts = self.cfg.MAX_COMMIT_RETRIES
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ConcurrencyConflict as exc:
                exc.details["attempts"] = attempt
                if attempt >= attempts:
                    logger.warning("%s gave up after %d attempts: %s", op, attempt, exc)
                    raise
                logger.warning(
                    "%s lost a race (attempt %d/%d): %s", op, attempt, attempts, exc
                )
                time.sleep(self.cfg.RETRY_BACKOFF_SEC * attempt)

    # ================== request checks ==================
    def _check_weight(self, weight: float, field: str = "estimated_weight") -> float:
        if weight is None or not math.isfinite(weight) or weight <= 0:
            raise InvalidRequestError(
                f"{field} must be a positive number", {"field": field, "value": weight}
            )
        return float(weight)

    def _check_address(self, address: AddressIn) -> Dict[str, Any]:
        for name in ("line1", "city", "state"):
            value = getattr(address, name)
            if value is None or not value.strip():
                raise InvalidAddressError(
                    f"address.{name} is required", {"field": f"address.{name}"}
                )
        data = address.model_dump(exclude_none=True)
        for name in ("line1", "line2", "city", "state"):
            if name in data:
                data[name] = data[name].strip()
        data["state"] = data["state"].upper()

        if address.postal_code is not None:
            code = address.postal_code.strip()
            if not ZIP_RE.match(code):
                raise InvalidAddressError(
                    f"Invalid postal code {address.postal_code!r}",
                    {"field": "address.postal_code"},
                )
            data["postal_code"] = code

        lat, lng = address.latitude, address.longitude
        if (lat is None) != (lng is None):
            raise InvalidAddressError(
                "latitude and longitude must be given together",
                {"field": "address.latitude" if lat is None else "address.longitude"},
            )
        if lat is not None and not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise InvalidAddressError(
                "Coordinates out of range", {"field": "address.latitude"}
            )
        return data

    def _raise_double_booking(self, customer_id: str, other: Booking) -> None:
        raise DoubleBookingError(
            f"Customer {customer_id} already has booking {other.booking_id} in this window",
            {
                "customer_id": customer_id,
                "booking_id": other.booking_id,
                "window_start": other.window_start.isoformat(),
                "window_end": other.window_end.isoformat(),
                "status": other.status,
            },
        )

    # ================== vehicle selection ==================
    def _eligible_vehicles(self, db: Session, address: Dict[str, Any]) -> List[Vehicle]:
        """Active vehicles whose service area covers the address or can't tell."""
        rows = (
            db.execute(
                select(Vehicle)
                .where(Vehicle.active.is_(True))
                .order_by(Vehicle.vehicle_id)
            )
            .scalars()
            .all()
        )
        return [v for v in rows if self.distance.covers(v, address) is not False]

    def _pick_vehicle(
        self,
        db: Session,
        candidates: Sequence[Vehicle],
        window: Window,
        weight: float,
        excluding_booking_id: Optional[str] = None,
    ) -> Tuple[Vehicle, Headroom]:
        """Vehicle with the most remaining headroom that still fits ``weight``.

        Raises CapacityExceededError when nothing fits, including an empty
        candidate list.
        """
        best: Optional[Tuple[Vehicle, Headroom]] = None
        rooms = []
        for v in candidates:
            room = self.ledger.headroom(db, v, window, excluding_booking_id)
            rooms.append(room)
            if room.fits(weight) and (
                best is None or room.remaining_lbs > best[1].remaining_lbs
            ):
                best = (v, room)
        if best is None:
            raise CapacityExceededError(
                f"No vehicle can take {weight:g} lbs in this window"
                if candidates
                else "No active vehicle serves this address",
                {
                    "requested_lbs": weight,
                    "candidates": [
                        {
                            "vehicle_id": r.vehicle_id,
                            "committed_lbs": r.committed_lbs,
                            "ceiling_lbs": r.ceiling_lbs,
                            "remaining_lbs": r.remaining_lbs,
                        }
                        for r in rooms
                    ],
                },
            )
        return best

    # ================== submit ==================
    def _find_by_token(
        self, db: Session, token: str, customer_id: str
    ) -> Optional[Booking]:
        existing = (
            db.execute(select(Booking).where(Booking.idempotency_token == token))
            .scalars()
            .first()
        )
        if existing is not None and existing.customer_id != customer_id:
            raise InvalidRequestError(
                "Idempotency token is already used by another customer",
                {"field": "idempotency_token"},
            )
        return existing

    def submit(self, request: BookingRequest) -> BookingResult:
        window = self.window_of(request.window)
        self.calendar.check_shape(window)

        token = request.idempotency_token
        if token:
            with self.session_factory() as db:
                existing = self._find_by_token(db, token, request.customer_id)
                if existing is not None:
                    logger.info("Idempotent replay of %s -> %s", token, existing.booking_id)
                    return _result(existing, created=False)

        address = self._check_address(request.address)
        weight = self._check_weight(request.estimated_weight)
        auto = not request.vehicle_id and (
            self.cfg.AUTO_ASSIGN if request.auto_assign is None else request.auto_assign
        )

        with self.session_factory() as db:
            self.calendar.validate_window(db, window, self.now())
            candidate_ids: List[str] = []
            if auto:
                candidate_ids = [v.vehicle_id for v in self._eligible_vehicles(db, address)]

        distance = self.distance.resolve(address)

        keys = [customer_key(request.customer_id)]
        if token:
            keys.append(token_key(token))
        if request.vehicle_id:
            keys.append(vehicle_key(request.vehicle_id))
        keys.extend(vehicle_key(vid) for vid in candidate_ids)

        def attempt() -> BookingResult:
            return self._submit_once(
                request, window, address, weight, distance, auto, set(candidate_ids), keys
            )

        return self._with_retries("submit", attempt)

    def _submit_once(
        self,
        request: BookingRequest,
        window: Window,
        address: Dict[str, Any],
        weight: float,
        distance: Optional[float],
        auto: bool,
        candidate_ids: set,
        keys: List[str],
    ) -> BookingResult:
        with self._locked_tx(keys) as db:
            token = request.idempotency_token
            if token:
                existing = self._find_by_token(db, token, request.customer_id)
                if existing is not None:
                    return _result(existing, created=False)

            other = self.conflicts.find_customer_conflict(db, request.customer_id, window)
            if other is not None:
                self._raise_double_booking(request.customer_id, other)

            vehicle_id: Optional[str] = None
            note: Optional[str] = None
            if request.vehicle_id:
                self.ledger.check_capacity(db, request.vehicle_id, window, weight)
                vehicle_id = request.vehicle_id
            elif auto:
                # only vehicles whose keys we hold
                candidates = [
                    v
                    for v in self._eligible_vehicles(db, address)
                    if v.vehicle_id in candidate_ids
                ]
                v, room = self._pick_vehicle(db, candidates, window, weight)
                vehicle_id = v.vehicle_id
                note = _auto_note(v, room)

            now = self.now()
            booking = Booking(
                customer_id=request.customer_id,
                quote_id=request.quote_id,
                shipment_id=request.shipment_id,
                direction=request.direction,
                window_start=window.start,
                window_end=window.end,
                address=address,
                postal_code=address.get("postal_code"),
                address_lat=address.get("latitude"),
                address_lng=address.get("longitude"),
                distance_miles=distance,
                status=PENDING,
                service_type=request.service_type,
                estimated_weight=weight,
                assigned_vehicle_id=vehicle_id,
                idempotency_token=token,
                notes=request.notes,
                created_at=now,
                updated_at=now,
            )
            if vehicle_id:
                booking.assignment = VehicleAssignment(
                    vehicle_id=vehicle_id, assigned_at=now, notes=note
                )
            db.add(booking)
            db.flush()

        logger.info(
            "Booking %s committed: customer=%s window=%s..%s vehicle=%s weight=%.2f",
            booking.booking_id,
            booking.customer_id,
            window.start.isoformat(),
            window.end.isoformat(),
            vehicle_id,
            weight,
        )
        return _result(booking, created=True)

    # ================== reschedule ==================
    def _load(self, db: Session, booking_id: str, for_update: bool = False) -> Booking:
        b = db.get(Booking, booking_id, with_for_update=for_update)
        if b is None:
            raise BookingNotFoundError(
                f"Booking {booking_id} not found", {"booking_id": booking_id}
            )
        return b

    def _ensure_active(self, b: Booking, action: str) -> None:
        if b.status not in ACTIVE_STATUSES:
            raise InvalidStateError(
                f"Cannot {action} a {b.status} booking",
                {"booking_id": b.booking_id, "current": b.status, "requested": action},
            )

    def reschedule(
        self, booking_id: str, new_window: WindowIn, vehicle_id: Optional[str] = None
    ) -> Booking:
        window = self.window_of(new_window)
        self.calendar.check_shape(window)

        def attempt() -> Booking:
            # re-planned on every attempt: the assignment may have moved
            with self.session_factory() as db:
                current = self._load(db, booking_id)
                self._ensure_active(current, "reschedule")
                self.calendar.validate_window(db, window, self.now())
                customer_id = current.customer_id
                current_vehicle = current.assigned_vehicle_id
                auto = not vehicle_id and not current_vehicle and self.cfg.AUTO_ASSIGN
                candidate_ids: List[str] = []
                if auto:
                    candidate_ids = [
                        v.vehicle_id
                        for v in self._eligible_vehicles(db, current.address)
                    ]

            keys = [booking_key(booking_id), customer_key(customer_id)]
            for vid in (vehicle_id, current_vehicle, *candidate_ids):
                if vid:
                    keys.append(vehicle_key(vid))
            return self._reschedule_once(
                booking_id,
                window,
                vehicle_id,
                current_vehicle,
                auto,
                set(candidate_ids),
                keys,
            )

        return self._with_retries("reschedule", attempt)

    def _reschedule_once(
        self,
        booking_id: str,
        window: Window,
        vehicle_id: Optional[str],
        expected_vehicle: Optional[str],
        auto: bool,
        candidate_ids: set,
        keys: List[str],
    ) -> Booking:
        with self._locked_tx(keys) as db:
            b = self._load(db, booking_id, for_update=True)
            self._ensure_active(b, "reschedule")
            if b.assigned_vehicle_id != expected_vehicle:
                # assignment moved since we chose which keys to lock
                raise ConcurrencyConflict(
                    "Booking assignment changed concurrently", {"booking_id": booking_id}
                )

            other = self.conflicts.find_customer_conflict(
                db, b.customer_id, window, excluding_booking_id=b.booking_id
            )
            if other is not None:
                self._raise_double_booking(b.customer_id, other)

            weight = float(
                b.actual_weight if b.actual_weight is not None else b.estimated_weight
            )
            target = vehicle_id or b.assigned_vehicle_id
            note: Optional[str] = None
            if target:
                self.ledger.check_capacity(
                    db, target, window, weight, excluding_booking_id=b.booking_id
                )
            elif auto:
                candidates = [
                    v
                    for v in self._eligible_vehicles(db, b.address)
                    if v.vehicle_id in candidate_ids
                ]
                v, room = self._pick_vehicle(
                    db, candidates, window, weight, excluding_booking_id=b.booking_id
                )
                target = v.vehicle_id
                note = _auto_note(v, room)

            old = (b.window_start, b.window_end, b.assigned_vehicle_id)
            now = self.now()
            if b.assignment is not None:
                # orphaned row is deleted on flush, before the new one is inserted
                b.assignment = None
                db.flush()
            b.window_start = window.start
            b.window_end = window.end
            b.assigned_vehicle_id = target
            b.updated_at = now
            if target:
                b.assignment = VehicleAssignment(
                    vehicle_id=target, assigned_at=now, notes=note
                )
            db.flush()

        logger.info(
            "Booking %s rescheduled %s..%s vehicle=%s -> %s..%s vehicle=%s",
            booking_id,
            old[0].isoformat(),
            old[1].isoformat(),
            old[2],
            window.start.isoformat(),
            window.end.isoformat(),
            target,
        )
        return b

    # ================== status changes ==================
    def _status_keys(self, booking_id: str) -> List[str]:
        with self.session_factory() as db:
            b = self._load(db, booking_id)
            keys = [booking_key(booking_id), customer_key(b.customer_id)]
            if b.assigned_vehicle_id:
                keys.append(vehicle_key(b.assigned_vehicle_id))
            return keys

    def _transition(
        self,
        booking_id: str,
        target: str,
        actual_weight: Optional[float] = None,
        only_from: Optional[str] = None,
    ) -> Booking:
        keys = self._status_keys(booking_id)

        def attempt() -> Booking:
            with self._locked_tx(keys) as db:
                b = self._load(db, booking_id, for_update=True)
                if only_from is not None and b.status != only_from:
                    return b
                if target == CANCELLED and b.status == CANCELLED:
                    return b
                previous = b.status
                ensure_transition(b.booking_id, b.status, target)
                b.status = target
                b.updated_at = self.now()
                if target == CANCELLED:
                    b.assignment = None
                    b.assigned_vehicle_id = None
                if actual_weight is not None:
                    b.actual_weight = actual_weight
                db.flush()
            logger.info("Booking %s %s -> %s", booking_id, previous, target)
            return b

        return self._with_retries(target, attempt)

    def cancel(self, booking_id: str) -> Booking:
        """Cancel and release the vehicle. Cancelling twice is a no-op."""
        return self._transition(booking_id, CANCELLED)

    def confirm(self, booking_id: str) -> Booking:
        return self._transition(booking_id, CONFIRMED)

    def complete(self, booking_id: str, actual_weight: Optional[float] = None) -> Booking:
        if actual_weight is not None:
            actual_weight = self._check_weight(actual_weight, "actual_weight")
        return self._transition(booking_id, COMPLETED, actual_weight=actual_weight)

    def expire_overdue(self, now: Optional[datetime] = None) -> SweepResult:
        """Cancel pending bookings whose window has already started."""
        cutoff = to_utc(now, self.tz) if now is not None else self.now()
        with self.session_factory() as db:
            ids = (
                db.execute(
                    select(Booking.booking_id)
                    .where(Booking.status == PENDING, Booking.window_start <= cutoff)
                    .order_by(Booking.window_start)
                )
                .scalars()
                .all()
            )
        expired: List[str] = []
        for booking_id in ids:
            b = self._transition(booking_id, CANCELLED, only_from=PENDING)
            if b.status == CANCELLED:
                expired.append(booking_id)
        if expired:
            logger.info("Expired %d overdue pending bookings", len(expired))
        return SweepResult(expired=len(expired), booking_ids=expired)

    # ================== reads ==================
    def get(self, booking_id: str) -> Booking:
        with self.session_factory() as db:
            return self._load(db, booking_id)

    def list_bookings(
        self,
        customer_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Booking]:
        stmt = select(Booking)
        if customer_id:
            stmt = stmt.where(Booking.customer_id == customer_id)
        if status:
            stmt = stmt.where(Booking.status == status)
        if start is not None:
            stmt = stmt.where(Booking.window_end > to_utc(start, self.tz))
        if end is not None:
            stmt = stmt.where(Booking.window_start < to_utc(end, self.tz))
        stmt = stmt.order_by(Booking.window_start, Booking.booking_id)
        stmt = stmt.limit(limit).offset(offset)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def available_windows(
        self,
        day: date,
        weight: float,
        address: Optional[AddressIn] = None,
    ) -> AvailableWindowsOut:
        weight = self._check_weight(weight)
        addr: Dict[str, Any] = (
            address.model_dump(exclude_none=True) if address is not None else {}
        )
        distance = self.distance.resolve(addr) if addr else None

        out: List[AvailableWindowOut] = []
        with self.session_factory() as db:
            hours, slots = self.calendar.candidate_windows(db, day, self.now())
            candidates = self._eligible_vehicles(db, addr)
            for w in slots:
                try:
                    v, room = self._pick_vehicle(db, candidates, w, weight)
                except CapacityExceededError:
                    continue
                out.append(
                    AvailableWindowOut(
                        start=w.start,
                        end=w.end,
                        remaining_capacity_lbs=room.remaining_lbs,
                        assigned_vehicle=AssignedVehicleOut(
                            vehicle_id=v.vehicle_id,
                            name=v.name,
                            capacity_lbs=float(v.capacity_lbs),
                        ),
                    )
                )

        return AvailableWindowsOut(
            hours=DayHoursOut(
                date=hours.date,
                open=hours.open,
                close=hours.close,
                closed=hours.closed,
                reason=hours.reason,
                source=hours.source,
            ),
            distance_miles=distance,
            windows=out,
        )
