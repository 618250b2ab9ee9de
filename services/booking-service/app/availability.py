from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import store
from .dates import calendar_days, stay_nights
from .errors import InvalidRangeError, NotFoundError, PartialFailureError, RoomsUnavailableError
from .models import RoomAvailability, RoomType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    unavailable_dates: list[date] = field(default_factory=list)


def get_room_type(s: Session, room_type_id: str) -> RoomType:
    room_type = s.get(RoomType, room_type_id)
    if room_type is None:
        raise NotFoundError("Room type not found")
    return room_type


def lock_room_type(s: Session, room_type_id: str) -> RoomType:
    """
    Load the room type under a shared row lock held until commit.

    Capacity changes take the exclusive lock, so they never interleave with
    a transaction that is adjusting nights of the same room type.
    """
    room_type = s.get(RoomType, room_type_id, with_for_update={"read": True})
    if room_type is None:
        raise NotFoundError("Room type not found")
    return room_type


def effective_available(record: RoomAvailability | None, room_type: RoomType) -> int:
    # No row yet means nothing has been consumed that night.
    if record is None:
        return room_type.total_rooms
    return record.available_rooms


def _require_rooms(rooms: int) -> None:
    if rooms < 1:
        raise InvalidRangeError("At least one room must be requested")


def check_availability(s: Session, room_type_id: str, check_in, check_out, rooms_requested: int) -> AvailabilityResult:
    """Read-only: every night of [check_in, check_out) must have ``rooms_requested`` left."""
    _require_rooms(rooms_requested)
    nights = stay_nights(check_in, check_out)
    room_type = get_room_type(s, room_type_id)

    records = store.get_range(s, room_type_id, nights)
    unavailable = [n for n in nights if effective_available(records.get(n), room_type) < rooms_requested]
    return AvailabilityResult(available=not unavailable, unavailable_dates=unavailable)


def availability_for_range(s: Session, room_type_id: str, start, end) -> list[tuple[date, int]]:
    """Inclusive [start, end] with gaps filled by the room type's capacity."""
    days = calendar_days(start, end)
    room_type = get_room_type(s, room_type_id)
    records = store.get_range(s, room_type_id, days)
    return [(d, effective_available(records.get(d), room_type)) for d in days]


def apply_delta(s: Session, room_type_id: str, check_in, check_out, delta: int) -> list[date]:
    """
    Shift availability by ``delta`` on every night of the stay, clamped to
    [0, total_rooms]. Returns the nights written.

    Runs inside the caller's transaction. A storage failure stops at the
    failing night and raises PartialFailureError listing written and
    unwritten nights; the caller decides whether to roll back.
    """
    nights = stay_nights(check_in, check_out)
    room_type = lock_room_type(s, room_type_id)

    written: list[date] = []
    for night in nights:
        try:
            store.increment(s, room_type_id, night, delta, ceiling=room_type.total_rooms)
        except SQLAlchemyError as exc:
            logger.exception(
                "Availability update failed (room_type_id=%s night=%s delta=%s written=%s)",
                room_type_id,
                night,
                delta,
                [n.isoformat() for n in written],
            )
            raise PartialFailureError(
                f"Availability update failed on {night.isoformat()}",
                succeeded=written,
                failed=nights[len(written):],
            ) from exc
        written.append(night)
    return written


def consume(s: Session, room_type_id: str, check_in, check_out, rooms: int) -> list[date]:
    """
    Take ``rooms`` from every night, refusing to go below zero.

    Each night is guarded atomically, so a booking that lost a race against
    a concurrent one fails here with RoomsUnavailableError. The caller must
    roll back; nights already taken in this transaction are undone with it.
    """
    _require_rooms(rooms)
    nights = stay_nights(check_in, check_out)
    room_type = lock_room_type(s, room_type_id)

    short = [n for n in nights if not store.decrement(s, room_type_id, n, rooms, ceiling=room_type.total_rooms)]
    if short:
        raise RoomsUnavailableError(short)
    return nights


def release(s: Session, room_type_id: str, check_in, check_out, rooms: int) -> list[date]:
    _require_rooms(rooms)
    return apply_delta(s, room_type_id, check_in, check_out, rooms)
