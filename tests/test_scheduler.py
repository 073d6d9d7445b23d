"""Tests for booking submission, rescheduling and lifecycle."""

from datetime import date, datetime

import pytest
from sqlalchemy import func, select

from booking_backend.errors import (
    BookingNotFoundError,
    CapacityExceededError,
    ConcurrencyConflict,
    DoubleBookingError,
    InvalidAddressError,
    InvalidRequestError,
    InvalidStateError,
    InvalidWindowError,
    OutOfHoursError,
    VehicleInactiveError,
)
from booking_backend.models import Booking, CapacityBlock, Vehicle, VehicleAssignment
from booking_backend.schemas import AddressIn, WindowIn
from booking_backend.schemas_extra import PostalCodeArea, RadiusArea
from tests.conftest import ADDRESS, make_request, tue


def count(session_factory, model, **filters):
    with session_factory() as db:
        stmt = select(func.count()).select_from(model)
        for k, v in filters.items():
            stmt = stmt.where(getattr(model, k) == v)
        return db.execute(stmt).scalar_one()


class TestSubmit:
    def test_creates_pending_booking_with_assignment(
        self, scheduler, make_vehicle, session_factory
    ):
        make_vehicle("V1")
        result = scheduler.submit(make_request(vehicle_id="V1"))
        assert result.created
        assert result.status == "pending"
        assert result.assigned_vehicle_id == "V1"
        assert result.distance_miles == 0.0
        assert count(session_factory, VehicleAssignment, booking_id=result.booking_id) == 1

    def test_capacity_and_double_booking_scenario(self, scheduler, make_vehicle):
        make_vehicle("V", capacity_lbs=1000)
        a = scheduler.submit(
            make_request("C1", tue(9), tue(11), weight=600, vehicle_id="V")
        )
        assert a.created

        with pytest.raises(CapacityExceededError) as exc:
            scheduler.submit(make_request("C2", tue(10), tue(12), weight=500, vehicle_id="V"))
        assert exc.value.details["committed_lbs"] == pytest.approx(600)

        with pytest.raises(DoubleBookingError) as exc:
            scheduler.submit(make_request("C1", tue(9, 30), tue(10, 30)))
        assert exc.value.details["booking_id"] == a.booking_id

    def test_invalid_window_before_conflict_check(self, scheduler):
        scheduler.submit(make_request("C1", tue(9), tue(11), auto_assign=False))
        with pytest.raises(InvalidWindowError):
            scheduler.submit(make_request("C1", tue(10), tue(9)))

    def test_out_of_hours(self, scheduler):
        with pytest.raises(OutOfHoursError):
            scheduler.submit(make_request(start=tue(6), end=tue(8)))

    def test_missing_address_line(self, scheduler):
        address = {**ADDRESS, "line1": "  "}
        with pytest.raises(InvalidAddressError, match="line1"):
            scheduler.submit(make_request(address=address))

    def test_bad_postal_code(self, scheduler):
        with pytest.raises(InvalidAddressError, match="postal code"):
            scheduler.submit(make_request(address={**ADDRESS, "postal_code": "ABCDE"}))

    def test_latitude_without_longitude(self, scheduler):
        with pytest.raises(InvalidAddressError, match="together"):
            scheduler.submit(make_request(address={**ADDRESS, "latitude": 40.7}))

    @pytest.mark.parametrize("weight", [0, -5])
    def test_non_positive_weight(self, scheduler, weight):
        with pytest.raises(InvalidRequestError, match="estimated_weight"):
            scheduler.submit(make_request(weight=weight))

    def test_unknown_distance_does_not_block(self, scheduler):
        result = scheduler.submit(
            make_request(address={**ADDRESS, "postal_code": "99999"}, auto_assign=False)
        )
        assert result.created
        assert result.distance_miles is None

    def test_naive_datetimes_are_business_local(self, scheduler):
        result = scheduler.submit(
            make_request(
                start=datetime(2026, 11, 10, 9),
                end=datetime(2026, 11, 10, 11),
                auto_assign=False,
            )
        )
        b = scheduler.get(result.booking_id)
        assert b.window_start == tue(9)
        assert b.window_end == tue(11)

    def test_address_is_normalised(self, scheduler):
        result = scheduler.submit(
            make_request(
                address={**ADDRESS, "state": "nj", "city": " Hoboken "},
                auto_assign=False,
            )
        )
        b = scheduler.get(result.booking_id)
        assert b.address["state"] == "NJ"
        assert b.address["city"] == "Hoboken"
        assert b.postal_code == "07030"


class TestIdempotency:
    def test_same_token_returns_same_booking(self, scheduler, session_factory):
        first = scheduler.submit(make_request(token="tok-1", auto_assign=False))
        second = scheduler.submit(make_request(token="tok-1", auto_assign=False))
        assert first.created and not second.created
        assert second.booking_id == first.booking_id
        assert count(session_factory, Booking) == 1

    def test_replay_wins_over_changed_payload(self, scheduler):
        first = scheduler.submit(make_request(token="tok-2", auto_assign=False))
        replay = scheduler.submit(
            make_request(start=tue(14), end=tue(16), token="tok-2", auto_assign=False)
        )
        assert replay.booking_id == first.booking_id
        assert scheduler.get(first.booking_id).window_start == tue(9)

    def test_bad_window_fails_even_for_known_token(self, scheduler):
        scheduler.submit(make_request(token="tok-3", auto_assign=False))
        with pytest.raises(InvalidWindowError):
            scheduler.submit(
                make_request(start=tue(11), end=tue(9), token="tok-3", auto_assign=False)
            )

    def test_token_is_scoped_to_customer(self, scheduler, session_factory):
        scheduler.submit(make_request("C1", token="shared", auto_assign=False))
        with pytest.raises(InvalidRequestError, match="another customer"):
            scheduler.submit(
                make_request(
                    "C2", tue(13), tue(15), token="shared", auto_assign=False
                )
            )
        assert count(session_factory, Booking) == 1

    def test_distinct_tokens_still_conflict(self, scheduler):
        scheduler.submit(make_request(token="a", auto_assign=False))
        with pytest.raises(DoubleBookingError):
            scheduler.submit(make_request(token="b", auto_assign=False))


class TestAutoAssign:
    def test_picks_most_headroom(self, scheduler, make_vehicle, add_booking):
        make_vehicle("V1", capacity_lbs=1000)
        make_vehicle("V2", capacity_lbs=1500)
        assert scheduler.submit(make_request("C1", weight=100)).assigned_vehicle_id == "V2"

        add_booking("C9", weight=1000, vehicle_id="V2")
        assert scheduler.submit(make_request("C2", weight=100)).assigned_vehicle_id == "V1"

    def test_respects_service_area(self, scheduler, make_vehicle):
        make_vehicle("FAR", capacity_lbs=5000, service_area=PostalCodeArea(postal_codes=["08901"]))
        make_vehicle(
            "NEAR",
            capacity_lbs=1000,
            service_area=RadiusArea(max_radius_miles=10),
            base_lat=40.7439,
            base_lng=-74.0324,
        )
        assert scheduler.submit(make_request(weight=100)).assigned_vehicle_id == "NEAR"

    def test_skips_inactive(self, scheduler, make_vehicle):
        make_vehicle("OFF", capacity_lbs=5000, active=False)
        make_vehicle("ON", capacity_lbs=500)
        assert scheduler.submit(make_request(weight=100)).assigned_vehicle_id == "ON"

    def test_nothing_fits(self, scheduler, make_vehicle):
        make_vehicle("V1", capacity_lbs=100)
        with pytest.raises(CapacityExceededError, match="No vehicle") as exc:
            scheduler.submit(make_request(weight=500))
        assert exc.value.details["candidates"][0]["vehicle_id"] == "V1"

    def test_empty_fleet(self, scheduler, session_factory):
        with pytest.raises(CapacityExceededError, match="No active vehicle") as exc:
            scheduler.submit(make_request())
        assert exc.value.details == {"requested_lbs": 100.0, "candidates": []}
        assert count(session_factory, Booking) == 0

    def test_no_vehicle_serves_area(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1", service_area=PostalCodeArea(postal_codes=["08901"]))
        with pytest.raises(CapacityExceededError) as exc:
            scheduler.submit(make_request(auto_assign=True))
        assert exc.value.details["candidates"] == []
        assert count(session_factory, Booking) == 0

    def test_assignment_note(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1", capacity_lbs=1000, name="Box Truck")
        r = scheduler.submit(make_request(weight=100))
        with session_factory() as db:
            a = db.execute(
                select(VehicleAssignment).where(VehicleAssignment.booking_id == r.booking_id)
            ).scalar_one()
        assert a.notes == "Auto-assigned vehicle Box Truck with 1000 lbs remaining capacity"

    def test_disabled_per_request(self, scheduler, make_vehicle):
        make_vehicle("V1")
        assert scheduler.submit(make_request(auto_assign=False)).assigned_vehicle_id is None


class TestRequestedVehicle:
    def test_inactive_vehicle(self, scheduler, make_vehicle, add_booking):
        make_vehicle("V1", capacity_lbs=800, active=False)
        add_booking("C9", weight=200, vehicle_id="V1")
        with pytest.raises(VehicleInactiveError) as exc:
            scheduler.submit(make_request(vehicle_id="V1"))
        assert exc.value.details == {
            "vehicle_id": "V1",
            "exists": True,
            "active": False,
            "capacity_lbs": 800.0,
            "committed_lbs": 200.0,
        }

    def test_unknown_vehicle(self, scheduler):
        with pytest.raises(VehicleInactiveError):
            scheduler.submit(make_request(vehicle_id="ghost"))

    def test_no_fallback_when_requested_vehicle_is_full(
        self, scheduler, make_vehicle, add_booking
    ):
        make_vehicle("V1", capacity_lbs=500)
        make_vehicle("V2", capacity_lbs=5000)
        add_booking("C9", weight=500, vehicle_id="V1")
        with pytest.raises(CapacityExceededError):
            scheduler.submit(make_request(vehicle_id="V1", weight=10))

    def test_capacity_block(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1", capacity_lbs=1000)
        with session_factory() as db, db.begin():
            db.add(CapacityBlock(window_start=tue(8), window_end=tue(17), max_lbs=500))
        with pytest.raises(CapacityExceededError) as exc:
            scheduler.submit(make_request(vehicle_id="V1", weight=600))
        assert exc.value.details["ceiling_lbs"] == pytest.approx(500)


class TestReschedule:
    def test_moves_window_and_keeps_vehicle(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1")
        r = scheduler.submit(make_request(vehicle_id="V1"))
        b = scheduler.reschedule(r.booking_id, WindowIn(start=tue(13), end=tue(15)))
        assert (b.window_start, b.window_end) == (tue(13), tue(15))
        assert b.assigned_vehicle_id == "V1"
        assert b.status == "pending"
        assert count(session_factory, VehicleAssignment, booking_id=r.booking_id) == 1

    def test_own_previous_window_is_excluded(self, scheduler, make_vehicle):
        make_vehicle("V1", capacity_lbs=1000)
        r = scheduler.submit(make_request(vehicle_id="V1", weight=600))
        b = scheduler.reschedule(r.booking_id, WindowIn(start=tue(10), end=tue(12)))
        assert b.window_start == tue(10)

    def test_conflict_leaves_booking_unchanged(self, scheduler):
        first = scheduler.submit(make_request("C1", tue(9), tue(11), auto_assign=False))
        second = scheduler.submit(make_request("C1", tue(13), tue(15), auto_assign=False))
        with pytest.raises(DoubleBookingError) as exc:
            scheduler.reschedule(second.booking_id, WindowIn(start=tue(10), end=tue(12)))
        assert exc.value.details["booking_id"] == first.booking_id
        assert scheduler.get(second.booking_id).window_start == tue(13)

    def test_capacity_failure_leaves_booking_unchanged(self, scheduler, make_vehicle):
        make_vehicle("V1", capacity_lbs=1000)
        scheduler.submit(make_request("C1", tue(9), tue(11), weight=600, vehicle_id="V1"))
        b = scheduler.submit(make_request("C2", tue(13), tue(15), weight=600, vehicle_id="V1"))
        with pytest.raises(CapacityExceededError):
            scheduler.reschedule(b.booking_id, WindowIn(start=tue(10), end=tue(12)))
        after = scheduler.get(b.booking_id)
        assert after.window_start == tue(13)
        assert after.assigned_vehicle_id == "V1"

    def test_switch_vehicle(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1")
        make_vehicle("V2")
        r = scheduler.submit(make_request(vehicle_id="V1"))
        b = scheduler.reschedule(r.booking_id, WindowIn(start=tue(9), end=tue(11)), "V2")
        assert b.assigned_vehicle_id == "V2"
        with session_factory() as db:
            rows = db.execute(
                select(VehicleAssignment).where(VehicleAssignment.booking_id == r.booking_id)
            ).scalars().all()
        assert [a.vehicle_id for a in rows] == ["V2"]

    def test_unassigned_booking_is_auto_assigned(self, scheduler, make_vehicle):
        r = scheduler.submit(make_request(auto_assign=False))
        make_vehicle("V1")
        b = scheduler.reschedule(r.booking_id, WindowIn(start=tue(13), end=tue(15)))
        assert b.assigned_vehicle_id == "V1"

    def test_confirmed_can_be_rescheduled(self, scheduler, make_vehicle):
        make_vehicle("V1")
        r = scheduler.submit(make_request(vehicle_id="V1"))
        scheduler.confirm(r.booking_id)
        b = scheduler.reschedule(r.booking_id, WindowIn(start=tue(13), end=tue(15)))
        assert b.status == "confirmed"

    def test_unassigned_booking_without_fleet(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        with pytest.raises(CapacityExceededError):
            scheduler.reschedule(r.booking_id, WindowIn(start=tue(13), end=tue(15)))
        after = scheduler.get(r.booking_id)
        assert after.window_start == tue(9)
        assert after.assigned_vehicle_id is None

    def test_cancelled_cannot_be_rescheduled(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        scheduler.cancel(r.booking_id)
        with pytest.raises(InvalidStateError, match="cancelled"):
            scheduler.reschedule(r.booking_id, WindowIn(start=tue(13), end=tue(15)))

    def test_invalid_window(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        with pytest.raises(InvalidWindowError):
            scheduler.reschedule(r.booking_id, WindowIn(start=tue(15), end=tue(13)))

    def test_unknown_booking(self, scheduler):
        with pytest.raises(BookingNotFoundError):
            scheduler.reschedule("missing", WindowIn(start=tue(13), end=tue(15)))


class TestLifecycle:
    def test_cancel_frees_capacity(self, scheduler, make_vehicle, session_factory):
        make_vehicle("V1", capacity_lbs=1000)
        a = scheduler.submit(make_request("C1", weight=600, vehicle_id="V1"))
        with pytest.raises(CapacityExceededError):
            scheduler.submit(make_request("C2", weight=500, vehicle_id="V1"))

        cancelled = scheduler.cancel(a.booking_id)
        assert cancelled.status == "cancelled"
        assert cancelled.assigned_vehicle_id is None
        assert count(session_factory, VehicleAssignment, booking_id=a.booking_id) == 0

        assert scheduler.submit(make_request("C2", weight=500, vehicle_id="V1")).created

    def test_cancel_is_idempotent(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        scheduler.cancel(r.booking_id)
        assert scheduler.cancel(r.booking_id).status == "cancelled"

    def test_confirm_then_complete(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        assert scheduler.confirm(r.booking_id).status == "confirmed"
        done = scheduler.complete(r.booking_id, actual_weight=140)
        assert done.status == "completed"
        assert done.actual_weight == pytest.approx(140)

    def test_complete_requires_confirmation(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        with pytest.raises(InvalidStateError, match="pending to completed"):
            scheduler.complete(r.booking_id)

    def test_confirm_twice(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        scheduler.confirm(r.booking_id)
        with pytest.raises(InvalidStateError):
            scheduler.confirm(r.booking_id)

    def test_completed_cannot_be_cancelled(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        scheduler.confirm(r.booking_id)
        scheduler.complete(r.booking_id)
        with pytest.raises(InvalidStateError):
            scheduler.cancel(r.booking_id)

    def test_complete_rejects_bad_weight(self, scheduler):
        r = scheduler.submit(make_request(auto_assign=False))
        scheduler.confirm(r.booking_id)
        with pytest.raises(InvalidRequestError, match="actual_weight"):
            scheduler.complete(r.booking_id, actual_weight=0)

    def test_completed_booking_releases_customer_window(self, scheduler):
        r = scheduler.submit(make_request("C1", auto_assign=False))
        scheduler.confirm(r.booking_id)
        scheduler.complete(r.booking_id)
        assert scheduler.submit(make_request("C1", auto_assign=False)).created

    def test_unknown_booking(self, scheduler):
        with pytest.raises(BookingNotFoundError):
            scheduler.cancel("missing")
        with pytest.raises(BookingNotFoundError):
            scheduler.get("missing")


class TestListAndSweep:
    def test_list_filters(self, scheduler):
        a = scheduler.submit(make_request("C1", tue(9), tue(11), auto_assign=False))
        scheduler.submit(make_request("C2", tue(13), tue(15), auto_assign=False))
        scheduler.confirm(a.booking_id)

        assert [b.booking_id for b in scheduler.list_bookings(customer_id="C1")] == [
            a.booking_id
        ]
        assert len(scheduler.list_bookings(status="pending")) == 1
        assert len(scheduler.list_bookings(start=tue(12), end=tue(17))) == 1
        assert len(scheduler.list_bookings()) == 2
        assert len(scheduler.list_bookings(limit=1)) == 1

    def test_expire_overdue(self, scheduler, add_booking):
        overdue = add_booking("C1", tue(9), tue(11))
        confirmed = add_booking("C2", tue(9), tue(11), status="confirmed")
        later = add_booking("C3", tue(13), tue(15))

        result = scheduler.expire_overdue(now=tue(10))
        assert result.expired == 1
        assert result.booking_ids == [overdue.booking_id]
        assert scheduler.get(overdue.booking_id).status == "cancelled"
        assert scheduler.get(confirmed.booking_id).status == "confirmed"
        assert scheduler.get(later.booking_id).status == "pending"

    def test_expire_uses_clock(self, scheduler, add_booking):
        add_booking("C1", tue(9), tue(11))
        assert scheduler.expire_overdue().expired == 0


class TestRetries:
    def test_transient_conflict_is_retried(self, scheduler, monkeypatch):
        calls = []
        original = scheduler._submit_once

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflict("lost a race")
            return original(*args, **kwargs)

        monkeypatch.setattr(scheduler, "_submit_once", flaky)
        assert scheduler.submit(make_request(auto_assign=False)).created
        assert len(calls) == 2

    def test_gives_up_after_max_attempts(self, scheduler, monkeypatch):
        def always(*args, **kwargs):
            raise ConcurrencyConflict("busy")

        monkeypatch.setattr(scheduler, "_submit_once", always)
        with pytest.raises(ConcurrencyConflict) as exc:
            scheduler.submit(make_request(auto_assign=False))
        assert exc.value.details["attempts"] == 3

    def test_integrity_error_becomes_conflict(self, scheduler, make_vehicle):
        make_vehicle("V1")
        with pytest.raises(ConcurrencyConflict):
            with scheduler._locked_tx(["vehicle:V1"]) as db:
                db.add(Vehicle(vehicle_id="V1", name="dup", capacity_lbs=1))
                db.flush()


class TestAvailableWindows:
    def test_full_day(self, scheduler, make_vehicle):
        make_vehicle("V1", capacity_lbs=1000)
        out = scheduler.available_windows(date(2026, 11, 10), 200)
        assert len(out.windows) == 8
        assert out.windows[0].assigned_vehicle.vehicle_id == "V1"
        assert out.windows[0].remaining_capacity_lbs == pytest.approx(1000)

    def test_full_slots_are_dropped(self, scheduler, make_vehicle, add_booking):
        make_vehicle("V1", capacity_lbs=1000)
        add_booking("C9", tue(9), tue(11), weight=900, vehicle_id="V1")
        out = scheduler.available_windows(date(2026, 11, 10), 200)
        assert [w.start.astimezone(tue(9).tzinfo).hour for w in out.windows] == [
            11,
            12,
            13,
            14,
            15,
        ]

    def test_closed_day(self, scheduler, make_vehicle):
        make_vehicle("V1")
        out = scheduler.available_windows(date(2026, 11, 14), 100)
        assert out.hours.closed
        assert out.windows == []

    def test_distance_for_postal_code(self, scheduler, make_vehicle):
        make_vehicle("V1")
        out = scheduler.available_windows(
            date(2026, 11, 10), 100, AddressIn(postal_code="08901")
        )
        assert 27.5 < out.distance_miles < 29.0

    def test_no_fleet_no_windows(self, scheduler):
        assert scheduler.available_windows(date(2026, 11, 10), 100).windows == []

    def test_bad_weight(self, scheduler):
        with pytest.raises(InvalidRequestError):
            scheduler.available_windows(date(2026, 11, 10), 0)
