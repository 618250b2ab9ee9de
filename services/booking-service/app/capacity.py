from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import case, delete, func, literal, select, update
from sqlalchemy.engine import Engine

from . import store
from .availability import get_room_type
from .dates import calendar_days, stay_nights
from .db import session
from .errors import CapacityConflictError, InvalidRangeError, InvalidStateError
from .models import Reservation, RoomAvailability, RoomType

CAPACITY_HORIZON_DAYS = int(os.getenv("CAPACITY_HORIZON_DAYS", "365"))

# PENDING holds took their rooms when the cart was filled.
HELD_STATUSES = ("CONFIRMED", "PENDING")

logger = logging.getLogger(__name__)


def _today() -> date:
    return datetime.now(tz=timezone.utc).date()


def booked_rooms_by_date(s, room_type_id: str, start: date, end: date, statuses=("CONFIRMED",)) -> dict[date, int]:
    """Rooms held per night in [start, end] by reservations in ``statuses``."""
    rows = (
        s.query(Reservation)
        .filter(Reservation.room_type_id == room_type_id)
        .filter(Reservation.status.in_(statuses))
        .filter(Reservation.check_in_date <= end)
        .filter(Reservation.check_out_date > start)
        .all()
    )
    counts: dict[date, int] = {}
    for r in rows:
        for night in stay_nights(r.check_in_date, r.check_out_date):
            if start <= night <= end:
                counts[night] = counts.get(night, 0) + r.rooms_booked
    return counts


def max_rooms_needed(s, room_type_id: str, start: date, end: date, statuses=("CONFIRMED",)) -> int:
    return max(booked_rooms_by_date(s, room_type_id, start, end, statuses).values(), default=0)


def rebuild_future_availability(s, room_type: RoomType, today: date) -> int:
    """
    Recompute every stored night from ``today`` on as total minus rooms held.

    One UPDATE with a correlated SUM over live reservations, so the new value
    is derived inside the database and never from the old row value.
    """
    held = (
        select(func.coalesce(func.sum(Reservation.rooms_booked), 0))
        .where(Reservation.room_type_id == RoomAvailability.room_type_id)
        .where(Reservation.status.in_(HELD_STATUSES))
        .where(Reservation.check_in_date <= RoomAvailability.date)
        .where(Reservation.check_out_date > RoomAvailability.date)
        .correlate(RoomAvailability)
        .scalar_subquery()
    )
    remaining = literal(room_type.total_rooms) - held
    result = s.execute(
        update(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type.id)
        .where(RoomAvailability.date >= today)
        .values(available_rooms=case((remaining < 0, 0), else_=remaining))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def set_room_type_capacity(engine: Engine, room_type_id: str, new_total: int, today: date | None = None) -> RoomType:
    if new_total < 0:
        raise InvalidRangeError("total_rooms must be >= 0")
    today = today or _today()

    with session(engine) as s:
        room_type = get_room_type(s, room_type_id)
        # Reservations share-lock the room type while they adjust nights.
        s.refresh(room_type, with_for_update=True)

        old_total = room_type.total_rooms
        if new_total < old_total:
            horizon_end = today + timedelta(days=CAPACITY_HORIZON_DAYS)
            needed = max_rooms_needed(s, room_type_id, today, horizon_end, statuses=HELD_STATUSES)
            if new_total < needed:
                raise CapacityConflictError(needed)

        room_type.total_rooms = new_total
        s.flush()
        rebuilt = rebuild_future_availability(s, room_type, today)
        s.commit()

    logger.info(
        "Room type capacity changed (room_type_id=%s old=%s new=%s rebuilt_nights=%s)",
        room_type_id,
        old_total,
        new_total,
        rebuilt,
    )
    return room_type


def set_availability_override(engine: Engine, room_type_id: str, start, end, available_rooms: int) -> list[date]:
    """
    Owner override of the bookable count for each day in [start, end].

    A day may not drop below its CONFIRMED rooms, nor offer more than the
    rooms not already held by CONFIRMED or PENDING reservations.
    All-or-nothing: one bad day rejects the whole range.
    """
    days = calendar_days(start, end)
    if available_rooms < 0:
        raise InvalidRangeError("available_rooms must be >= 0")

    with session(engine) as s:
        room_type = get_room_type(s, room_type_id)
        s.refresh(room_type, with_for_update=True)
        if available_rooms > room_type.total_rooms:
            raise InvalidRangeError(f"available_rooms cannot exceed total rooms ({room_type.total_rooms})")

        booked = booked_rooms_by_date(s, room_type_id, days[0], days[-1])
        held = booked_rooms_by_date(s, room_type_id, days[0], days[-1], statuses=HELD_STATUSES)
        for d in days:
            if available_rooms < booked.get(d, 0):
                raise CapacityConflictError(
                    booked[d],
                    conflict_date=d,
                    message=f"Cannot set available rooms below current bookings for date {d.isoformat()}",
                )
            unsold = room_type.total_rooms - held.get(d, 0)
            if available_rooms > unsold:
                raise CapacityConflictError(
                    held[d],
                    conflict_date=d,
                    message=f"Only {unsold} rooms are unbooked on {d.isoformat()}",
                )

        for d in days:
            store.upsert(s, room_type_id, d, available_rooms)
        s.commit()

    logger.info(
        "Availability override (room_type_id=%s start=%s end=%s available_rooms=%s)",
        room_type_id,
        days[0],
        days[-1],
        available_rooms,
    )
    return days


def delete_room_type(engine: Engine, room_type_id: str) -> None:
    with session(engine) as s:
        get_room_type(s, room_type_id)
        confirmed = (
            s.query(Reservation)
            .filter(Reservation.room_type_id == room_type_id)
            .filter(Reservation.status == "CONFIRMED")
            .first()
        )
        if confirmed is not None:
            raise InvalidStateError("Cannot delete room type with active reservations")

        s.execute(delete(RoomAvailability).where(RoomAvailability.room_type_id == room_type_id))
        s.execute(delete(Reservation).where(Reservation.room_type_id == room_type_id))
        s.execute(delete(RoomType).where(RoomType.id == room_type_id))
        s.commit()

    logger.info("Room type deleted (room_type_id=%s)", room_type_id)
