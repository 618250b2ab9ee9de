from datetime import date, datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import event

from app import capacity, lifecycle, store
from app.availability import availability_for_range
from app.db import session
from app.errors import CapacityConflictError, InvalidRangeError, InvalidStateError, RoomsUnavailableError
from app.models import Booking, Reservation, RoomType

from conftest import make_room_type, principal

TODAY = date(2024, 6, 1)
JULY_1 = date(2024, 7, 1)
JULY_2 = date(2024, 7, 2)


def _add_reservation(engine, room_type_id, check_in, check_out, rooms, status="CONFIRMED", consume=True):
    now = datetime.now(tz=timezone.utc)
    booking = Booking(
        id=str(uuid4()),
        user_id="guest-1",
        status=status,
        total_price=0,
        created_at=now,
        updated_at=now,
        hold_expires_at=None,
    )
    reservation = Reservation(
        id=str(uuid4()),
        booking_id=booking.id,
        room_type_id=room_type_id,
        check_in_date=check_in,
        check_out_date=check_out,
        rooms_booked=rooms,
        status=status,
        created_at=now,
        updated_at=now,
    )
    with session(engine) as s:
        s.add(booking)
        s.add(reservation)
        if consume:
            rt = s.get(RoomType, room_type_id)
            n = check_in
            while n < check_out:
                store.decrement(s, room_type_id, n, rooms, ceiling=rt.total_rooms)
                n = date.fromordinal(n.toordinal() + 1)
        s.commit()
    return reservation


def test_capacity_reduction_below_confirmed_bookings_is_rejected(engine):
    rt = make_room_type(engine, total_rooms=10)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 5), 8)

    with pytest.raises(CapacityConflictError) as exc_info:
        capacity.set_room_type_capacity(engine, rt.id, 5, today=TODAY)
    assert exc_info.value.max_rooms_needed == 8

    updated = capacity.set_room_type_capacity(engine, rt.id, 8, today=TODAY)
    assert updated.total_rooms == 8


def test_max_rooms_needed_accumulates_overlapping_stays(engine):
    rt = make_room_type(engine, total_rooms=10)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 4), 3)
    _add_reservation(engine, rt.id, date(2024, 7, 3), date(2024, 7, 6), 4)
    # Only CONFIRMED stays count unless other statuses are asked for.
    _add_reservation(engine, rt.id, date(2024, 7, 3), date(2024, 7, 4), 2, status="PENDING")

    with session(engine) as s:
        assert capacity.max_rooms_needed(s, rt.id, TODAY, date(2025, 6, 1)) == 7
        by_date = capacity.booked_rooms_by_date(s, rt.id, date(2024, 7, 1), date(2024, 7, 6))

    assert by_date[date(2024, 7, 3)] == 7
    assert date(2024, 7, 6) not in by_date


def test_capacity_change_rebuilds_future_records_from_reservations(engine):
    rt = make_room_type(engine, total_rooms=10)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 3), 4)
    _add_reservation(engine, rt.id, date(2024, 7, 2), date(2024, 7, 3), 1, status="PENDING")
    with session(engine) as s:
        # Drifted value that the rebuild must not trust.
        store.upsert(s, rt.id, date(2024, 7, 10), 2)
        s.commit()

    capacity.set_room_type_capacity(engine, rt.id, 6, today=TODAY)

    with session(engine) as s:
        days = dict(availability_for_range(s, rt.id, date(2024, 7, 1), date(2024, 7, 10)))
    assert days[date(2024, 7, 1)] == 2
    assert days[date(2024, 7, 2)] == 1
    assert days[date(2024, 7, 5)] == 6
    assert days[date(2024, 7, 10)] == 6


def test_capacity_increase_is_always_allowed(engine):
    rt = make_room_type(engine, total_rooms=2)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 2), 2)

    capacity.set_room_type_capacity(engine, rt.id, 5, today=TODAY)

    with session(engine) as s:
        assert availability_for_range(s, rt.id, date(2024, 7, 1), date(2024, 7, 1)) == [(date(2024, 7, 1), 3)]


def _confirmed_rooms(engine, room_type_id, night):
    with session(engine) as s:
        return capacity.booked_rooms_by_date(s, room_type_id, night, night).get(night, 0)


@pytest.mark.anyio
async def test_capacity_cannot_drop_below_pending_holds(engine, published):
    rt = make_room_type(engine, total_rooms=5)
    hold = await lifecycle.reserve(engine, "guest-1", rt.id, JULY_1, JULY_2, 3)

    with pytest.raises(CapacityConflictError) as exc_info:
        capacity.set_room_type_capacity(engine, rt.id, 1, today=TODAY)
    assert exc_info.value.max_rooms_needed == 3

    await lifecycle.confirm_booking(engine, principal("guest-1"), hold.booking_id, payment_succeeded=True)
    with session(engine) as s:
        total = s.get(RoomType, rt.id).total_rooms
    assert _confirmed_rooms(engine, rt.id, JULY_1) == 3
    assert total == 5


def test_rebuild_runs_as_one_update_in_the_database(engine):
    rt = make_room_type(engine, total_rooms=10)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 3), 4)

    statements = []

    def _record(conn, cursor, statement, *args):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", _record)
    try:
        capacity.set_room_type_capacity(engine, rt.id, 6, today=TODAY)
    finally:
        event.remove(engine, "before_cursor_execute", _record)

    rebuilds = [st for st in statements if st.lstrip().upper().startswith("UPDATE ROOM_AVAILABILITY")]
    assert len(rebuilds) == 1
    assert "sum(" in rebuilds[0].lower()
    assert not any(st.lstrip().upper().startswith("SELECT") and "FROM room_availability" in st for st in statements)

    with session(engine) as s:
        assert availability_for_range(s, rt.id, date(2024, 7, 1), date(2024, 7, 2)) == [
            (date(2024, 7, 1), 2),
            (date(2024, 7, 2), 2),
        ]


def test_negative_capacity_is_invalid(engine):
    rt = make_room_type(engine, total_rooms=2)
    with pytest.raises(InvalidRangeError):
        capacity.set_room_type_capacity(engine, rt.id, -1, today=TODAY)


def test_override_rejects_values_below_bookings(engine):
    rt = make_room_type(engine, total_rooms=5)
    _add_reservation(engine, rt.id, date(2024, 7, 2), date(2024, 7, 3), 3)

    with pytest.raises(CapacityConflictError) as exc_info:
        capacity.set_availability_override(engine, rt.id, date(2024, 7, 1), date(2024, 7, 3), 2)
    assert exc_info.value.conflict_date == date(2024, 7, 2)
    assert exc_info.value.max_rooms_needed == 3

    with pytest.raises(InvalidRangeError):
        capacity.set_availability_override(engine, rt.id, date(2024, 7, 1), date(2024, 7, 1), 6)


@pytest.mark.anyio
async def test_override_cannot_resell_booked_rooms(engine, published):
    rt = make_room_type(engine, total_rooms=5)
    _add_reservation(engine, rt.id, JULY_1, JULY_2, 2)

    with pytest.raises(CapacityConflictError) as exc_info:
        capacity.set_availability_override(engine, rt.id, JULY_1, JULY_1, 5)
    assert exc_info.value.conflict_date == JULY_1

    capacity.set_availability_override(engine, rt.id, JULY_1, JULY_1, 3)
    booking, _ = await lifecycle.add_to_booking(engine, "guest-2", room_type_id=rt.id, check_in=JULY_1, check_out=JULY_2, rooms=3)
    await lifecycle.confirm_booking(engine, principal("guest-2"), booking.id, payment_succeeded=True)
    with pytest.raises(RoomsUnavailableError):
        await lifecycle.reserve(engine, "guest-3", rt.id, JULY_1, JULY_2, 1)

    assert _confirmed_rooms(engine, rt.id, JULY_1) == 5


@pytest.mark.anyio
async def test_override_cannot_release_rooms_under_pending_holds(engine, published):
    rt = make_room_type(engine, total_rooms=5)
    await lifecycle.reserve(engine, "guest-1", rt.id, JULY_1, JULY_2, 4)

    with pytest.raises(CapacityConflictError) as exc_info:
        capacity.set_availability_override(engine, rt.id, JULY_1, JULY_1, 2)
    assert exc_info.value.max_rooms_needed == 4

    capacity.set_availability_override(engine, rt.id, JULY_1, JULY_1, 1)


def test_override_writes_every_day_of_the_range(engine):
    rt = make_room_type(engine, total_rooms=5)
    days = capacity.set_availability_override(engine, rt.id, date(2024, 8, 1), date(2024, 8, 3), 1)

    assert days == [date(2024, 8, 1), date(2024, 8, 2), date(2024, 8, 3)]
    with session(engine) as s:
        view = availability_for_range(s, rt.id, date(2024, 8, 1), date(2024, 8, 4))
    assert view == [(date(2024, 8, 1), 1), (date(2024, 8, 2), 1), (date(2024, 8, 3), 1), (date(2024, 8, 4), 5)]


def test_room_type_with_confirmed_reservation_cannot_be_deleted(engine):
    rt = make_room_type(engine, total_rooms=5)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 2), 1)

    with pytest.raises(InvalidStateError):
        capacity.delete_room_type(engine, rt.id)


def test_room_type_without_confirmed_reservations_is_deleted(engine):
    rt = make_room_type(engine, total_rooms=5)
    _add_reservation(engine, rt.id, date(2024, 7, 1), date(2024, 7, 2), 1, status="CANCELLED", consume=False)

    capacity.delete_room_type(engine, rt.id)

    with session(engine) as s:
        assert s.get(RoomType, rt.id) is None
