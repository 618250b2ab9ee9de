"""
Persistence operations on per-night availability rows.

Every write is a single conditional SQL statement so concurrent requests
never read-modify-write the same counter in Python.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable
from uuid import uuid4

from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import RoomAvailability

_INSERT_ON_CONFLICT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def get(s: Session, room_type_id: str, night: date) -> RoomAvailability | None:
    stmt = (
        select(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type_id)
        .where(RoomAvailability.date == night)
        .execution_options(populate_existing=True)
    )
    return s.execute(stmt).scalar_one_or_none()


def get_range(s: Session, room_type_id: str, nights: Iterable[date]) -> dict[date, RoomAvailability]:
    wanted = set(nights)
    if not wanted:
        return {}
    stmt = (
        select(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type_id)
        .where(RoomAvailability.date.in_(wanted))
        .execution_options(populate_existing=True)
    )
    return {r.date: r for r in s.execute(stmt).scalars()}


def ensure(s: Session, room_type_id: str, night: date, default: int) -> None:
    """Create the row seeded with ``default`` unless one already exists."""
    values = {
        "id": str(uuid4()),
        "room_type_id": room_type_id,
        "date": night,
        "available_rooms": default,
    }
    insert = _INSERT_ON_CONFLICT.get(s.get_bind().dialect.name)
    if insert is not None:
        stmt = (
            insert(RoomAvailability.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["room_type_id", "date"])
        )
        s.execute(stmt)
        return

    # Fallback for dialects without ON CONFLICT.
    if get(s, room_type_id, night) is not None:
        return
    try:
        with s.begin_nested():
            s.add(RoomAvailability(**values))
    except IntegrityError:
        # A concurrent writer inserted the same (room_type_id, date) first;
        # the row exists, which is all this function guarantees.
        if get(s, room_type_id, night) is None:
            raise


def upsert(s: Session, room_type_id: str, night: date, available_rooms: int) -> None:
    ensure(s, room_type_id, night, available_rooms)
    s.execute(
        update(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type_id)
        .where(RoomAvailability.date == night)
        .values(available_rooms=available_rooms)
        .execution_options(synchronize_session=False)
    )


def increment(s: Session, room_type_id: str, night: date, delta: int, *, ceiling: int) -> None:
    """
    Add ``delta`` (may be negative) clamped to [0, ceiling].

    A missing row counts as ``ceiling`` before the delta is applied.
    """
    ensure(s, room_type_id, night, ceiling)
    value = RoomAvailability.available_rooms + delta
    clamped = case((value > ceiling, ceiling), (value < 0, 0), else_=value)
    s.execute(
        update(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type_id)
        .where(RoomAvailability.date == night)
        .values(available_rooms=clamped)
        .execution_options(synchronize_session=False)
    )


def decrement(s: Session, room_type_id: str, night: date, rooms: int, *, ceiling: int) -> bool:
    """
    Take ``rooms`` from the night only if that many are left.

    Returns False when the guard fails (a concurrent booking got there first).
    """
    ensure(s, room_type_id, night, ceiling)
    result = s.execute(
        update(RoomAvailability)
        .where(RoomAvailability.room_type_id == room_type_id)
        .where(RoomAvailability.date == night)
        .where(RoomAvailability.available_rooms >= rooms)
        .values(available_rooms=RoomAvailability.available_rooms - rooms)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
