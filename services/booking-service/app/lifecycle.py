"""
Booking and reservation lifecycle.

Booking:      none -> PENDING -> CONFIRMED -> CANCELLED
                      PENDING -> CANCELLED (abandoned or expired cart)
Reservation and flight items follow their booking, except that scoped
cancellation can flip individual items to CANCELLED on their own.

Capacity is taken when a reservation is created (PENDING) and given back
when it is cancelled, always over the reservation's stored stay range.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import availability, events
from .dates import stay_nights
from .db import session
from .errors import (
    AuthorizationError,
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    PartialFailureError,
    PaymentFailedError,
    ReservationError,
    RoomsUnavailableError,
)
from .models import Booking, FlightLeg, Reservation

HOLD_MINUTES = int(os.getenv("HOLD_MINUTES", "30"))

CancelScope = Literal["all", "hotels", "flights"]
CANCEL_SCOPES: tuple[str, ...] = ("all", "hotels", "flights")

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for DateTime(timezone=True).
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _short(booking_id: str) -> str:
    return booking_id[:8]


@dataclass(frozen=True)
class FlightItem:
    external_flight_id: str
    source: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    price: int = 0


@dataclass(frozen=True)
class CancellationPlan:
    """What a cancellation request resolves to once scope and caller are known."""

    reservation_ids: list[str]
    flight_ids: list[str]
    initiated_by: Literal["user", "hotel"]
    full: bool


@dataclass
class CancellationOutcome:
    booking: Booking
    initiated_by: Literal["user", "hotel"]
    cancelled_reservation_ids: list[str] = field(default_factory=list)
    cancelled_flight_ids: list[str] = field(default_factory=list)


def _get_booking(s: Session, booking_id: str) -> Booking:
    booking = s.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    return booking


def _hotel_owner_id(reservation: Reservation) -> str:
    return reservation.room_type.hotel.owner_id


def _owned_reservations(booking: Booking, principal: dict) -> list[Reservation]:
    if principal.get("role") != "hotel_owner":
        return []
    return [r for r in booking.reservations if _hotel_owner_id(r) == principal.get("sub")]


def can_view_booking(booking: Booking, principal: dict) -> bool:
    return booking.user_id == principal.get("sub") or bool(_owned_reservations(booking, principal))


def plan_cancellation(booking: Booking, principal: dict, scope: CancelScope) -> CancellationPlan:
    """
    Resolve a scoped cancellation request into the items it touches.

    The booking owner may cancel everything, only hotel items, or only
    flights. A hotel operator who does not own the booking may cancel only
    the reservations at hotels they operate, and never flights.
    """
    if scope not in CANCEL_SCOPES:
        raise ValueError(f"Unknown cancellation scope: {scope!r}")

    live_reservations = [r for r in booking.reservations if r.status != "CANCELLED"]
    live_flights = [f for f in booking.flights if f.status != "CANCELLED"]

    if booking.user_id == principal.get("sub"):
        if scope == "all":
            return CancellationPlan(
                reservation_ids=[r.id for r in live_reservations],
                flight_ids=[f.id for f in live_flights],
                initiated_by="user",
                full=True,
            )
        if scope == "hotels":
            return CancellationPlan(
                reservation_ids=[r.id for r in live_reservations],
                flight_ids=[],
                initiated_by="user",
                full=False,
            )
        return CancellationPlan(
            reservation_ids=[],
            flight_ids=[f.id for f in live_flights],
            initiated_by="user",
            full=False,
        )

    owned = _owned_reservations(booking, principal)
    if not owned or scope == "flights":
        raise AuthorizationError("Not allowed to cancel this booking")
    return CancellationPlan(
        reservation_ids=[r.id for r in owned if r.status != "CANCELLED"],
        flight_ids=[],
        initiated_by="hotel",
        full=False,
    )


def reserve_rooms(
    s: Session,
    booking: Booking,
    *,
    room_type_id: str,
    check_in,
    check_out,
    rooms: int,
    hotel_id: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """
    Check, persist a PENDING reservation and take its capacity, inside ``s``.

    Nothing is committed here: if taking capacity fails the caller's
    rollback also drops the reservation row.
    """
    nights = stay_nights(check_in, check_out)
    if rooms < 1:
        raise InvalidRangeError("At least one room must be requested")
    room_type = availability.lock_room_type(s, room_type_id)
    if hotel_id is not None and room_type.hotel_id != hotel_id:
        raise NotFoundError("Room type not found")

    result = availability.check_availability(s, room_type_id, nights[0], nights[-1] + timedelta(days=1), rooms)
    if not result.available:
        raise RoomsUnavailableError(result.unavailable_dates)

    now = now or _now()
    reservation = Reservation(
        id=str(uuid4()),
        booking_id=booking.id,
        room_type_id=room_type_id,
        check_in_date=nights[0],
        check_out_date=nights[-1] + timedelta(days=1),
        rooms_booked=rooms,
        price=room_type.price_per_night * len(nights) * rooms,
        status="PENDING",
        created_at=now,
        updated_at=now,
    )
    s.add(reservation)
    s.flush()

    availability.consume(s, room_type_id, reservation.check_in_date, reservation.check_out_date, rooms)
    booking.total_price += reservation.price
    return reservation


def _open_cart(s: Session, user_id: str, booking_id: str | None, now: datetime) -> Booking:
    if booking_id is None:
        booking = Booking(
            id=str(uuid4()),
            user_id=user_id,
            status="PENDING",
            total_price=0,
            created_at=now,
            updated_at=now,
            hold_expires_at=now + timedelta(minutes=HOLD_MINUTES),
        )
        s.add(booking)
        return booking

    booking = _get_booking(s, booking_id)
    if booking.user_id != user_id:
        raise NotFoundError("Booking not found")
    if booking.status != "PENDING":
        raise InvalidStateError(f"Booking is not open for changes (status={booking.status})")
    booking.updated_at = now
    booking.hold_expires_at = now + timedelta(minutes=HOLD_MINUTES)
    return booking


async def add_to_booking(
    engine: Engine,
    user_id: str,
    *,
    room_type_id: str | None = None,
    check_in=None,
    check_out=None,
    rooms: int = 1,
    hotel_id: str | None = None,
    flights: list[FlightItem] | None = None,
    booking_id: str | None = None,
) -> tuple[Booking, Reservation | None]:
    """Add a hotel item and/or flight legs to a new or existing PENDING booking."""
    flights = flights or []
    if room_type_id is None and not flights:
        raise ValueError("Must provide either hotel booking or flight booking details")

    release_expired_holds(engine)
    now = _now()

    with session(engine) as s:
        booking = _open_cart(s, user_id, booking_id, now)
        reservation = None
        if room_type_id is not None:
            reservation = reserve_rooms(
                s,
                booking,
                room_type_id=room_type_id,
                check_in=check_in,
                check_out=check_out,
                rooms=rooms,
                hotel_id=hotel_id,
                now=now,
            )
        for item in flights:
            s.add(
                FlightLeg(
                    id=str(uuid4()),
                    booking_id=booking.id,
                    external_flight_id=item.external_flight_id,
                    source=item.source,
                    destination=item.destination,
                    departure_time=item.departure_time,
                    arrival_time=item.arrival_time,
                    price=item.price,
                    status="PENDING",
                )
            )
            booking.total_price += item.price
        s.commit()
        s.refresh(booking)
        # Load items while the session is open.
        _ = (booking.reservations, booking.flights)

    logger.info(
        "Booking held (booking_id=%s reservation_id=%s flights=%s)",
        booking.id,
        reservation.id if reservation else None,
        len(flights),
    )
    await events.notify(
        "booking.held",
        booking.user_id,
        f"Items added to your booking ({_short(booking.id)}).",
        booking_id=booking.id,
        reservation_id=reservation.id if reservation else None,
        hold_expires_at=booking.hold_expires_at.isoformat() if booking.hold_expires_at else None,
        total=booking.total_price,
    )
    return booking, reservation


async def reserve(
    engine: Engine,
    user_id: str,
    room_type_id: str,
    check_in,
    check_out,
    rooms: int,
    *,
    hotel_id: str | None = None,
    booking_id: str | None = None,
) -> Reservation:
    _, reservation = await add_to_booking(
        engine,
        user_id,
        room_type_id=room_type_id,
        check_in=check_in,
        check_out=check_out,
        rooms=rooms,
        hotel_id=hotel_id,
        booking_id=booking_id,
    )
    return reservation


def _release_reservation(s: Session, reservation: Reservation, now: datetime) -> bool:
    """
    Flip one reservation to CANCELLED and give its rooms back.

    The status flip is a conditional update, so two concurrent cancellations
    of the same reservation release its capacity only once.
    """
    result = s.execute(
        update(Reservation)
        .where(Reservation.id == reservation.id)
        .where(Reservation.status != "CANCELLED")
        .values(status="CANCELLED", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    s.refresh(reservation)
    availability.release(
        s,
        reservation.room_type_id,
        reservation.check_in_date,
        reservation.check_out_date,
        reservation.rooms_booked,
    )
    return True


def _expire_booking(s: Session, booking: Booking, now: datetime) -> None:
    for r in booking.reservations:
        _release_reservation(s, r, now)
    for f in booking.flights:
        f.status = "CANCELLED"
    booking.status = "CANCELLED"
    booking.updated_at = now
    booking.hold_expires_at = None


def release_expired_holds(engine: Engine, now: datetime | None = None) -> int:
    """
    Cancel PENDING bookings whose hold ran out and release their rooms.

    This is NOT a background scheduler; it's invoked on write paths.
    """
    now = now or _now()
    with session(engine) as s:
        expired_ids = [
            b.id
            for b in s.query(Booking)
            .filter(Booking.status == "PENDING")
            .filter(Booking.hold_expires_at.isnot(None))
            .filter(Booking.hold_expires_at < now)
            .all()
        ]

    released = 0
    for booking_id in expired_ids:
        try:
            with session(engine) as s:
                booking = _get_booking(s, booking_id)
                if booking.status != "PENDING":
                    continue
                _expire_booking(s, booking, now)
                s.commit()
        except (SQLAlchemyError, ReservationError):
            logger.exception("Failed to release expired hold (booking_id=%s)", booking_id)
            continue
        released += 1

    if released:
        logger.info("Released %s expired holds", released)
    return released


async def confirm_booking(engine: Engine, principal: dict, booking_id: str, payment_succeeded: bool) -> Booking:
    now = _now()
    with session(engine) as s:
        booking = _get_booking(s, booking_id)
        if booking.user_id != principal.get("sub"):
            raise AuthorizationError("Only the booking owner can check out")
        if booking.status != "PENDING":
            raise InvalidStateError(f"Booking is not pending (status={booking.status})")

        if booking.hold_expires_at and _as_utc(booking.hold_expires_at) < now:
            _expire_booking(s, booking, now)
            s.commit()
            raise InvalidStateError("Hold expired")

        if not payment_succeeded:
            raise PaymentFailedError("Payment was not successful")

        for r in booking.reservations:
            if r.status == "PENDING":
                r.status = "CONFIRMED"
                r.updated_at = now
        for f in booking.flights:
            if f.status == "PENDING":
                f.status = "CONFIRMED"
        booking.status = "CONFIRMED"
        booking.updated_at = now
        booking.hold_expires_at = None
        s.commit()
        _ = (booking.reservations, booking.flights)

    logger.info("Booking confirmed (booking_id=%s)", booking.id)
    await events.notify(
        "booking.confirmed",
        booking.user_id,
        f"Your booking #{_short(booking.id)} has been confirmed.",
        booking_id=booking.id,
        total=booking.total_price,
    )
    return booking


def _all_items_cancelled(booking: Booking) -> bool:
    return all(r.status == "CANCELLED" for r in booking.reservations) and all(
        f.status == "CANCELLED" for f in booking.flights
    )


def _cancellation_message(booking_id: str, outcome: CancellationOutcome) -> str:
    if outcome.initiated_by == "hotel":
        n = len(outcome.cancelled_reservation_ids)
        return (
            f"Your hotel reservation{'s' if n > 1 else ''} for booking (ID: {_short(booking_id)}) "
            f"{'have' if n > 1 else 'has'} been cancelled by the hotel"
        )
    how = "completely" if outcome.booking.status == "CANCELLED" else "partially"
    return f"Your booking (ID: {_short(booking_id)}) has been {how} cancelled"


async def _notify_cancelled(principal: dict, outcome: CancellationOutcome) -> None:
    booking = outcome.booking
    await events.notify(
        "booking.cancelled",
        booking.user_id,
        _cancellation_message(booking.id, outcome),
        booking_id=booking.id,
        cancelled_by=principal.get("sub"),
        initiated_by=outcome.initiated_by,
        booking_status=booking.status,
        reservation_ids=outcome.cancelled_reservation_ids,
        flight_ids=outcome.cancelled_flight_ids,
    )


async def cancel_booking(engine: Engine, principal: dict, booking_id: str, scope: CancelScope = "all") -> CancellationOutcome:
    """
    Cancel a booking, or the part of it the scope and caller allow.

    Each reservation is cancelled and released in its own transaction so a
    failing release never undoes its siblings. Failures are collected and
    raised as PartialFailureError after the successful part is committed and
    the owner has been notified.
    """
    with session(engine) as s:
        booking = _get_booking(s, booking_id)
        if booking.status == "CANCELLED":
            raise InvalidStateError("Booking is already cancelled")
        plan = plan_cancellation(booking, principal, scope)

    now = _now()
    cancelled: list[str] = []
    failed: list[dict] = []
    for reservation_id in plan.reservation_ids:
        try:
            with session(engine) as s:
                reservation = s.get(Reservation, reservation_id)
                if reservation is None:
                    raise NotFoundError("Reservation not found")
                changed = _release_reservation(s, reservation, now)
                s.commit()
        except (SQLAlchemyError, ReservationError) as exc:
            logger.exception("Cancellation failed (booking_id=%s reservation_id=%s)", booking_id, reservation_id)
            failed.append({"reservation_id": reservation_id, "error": str(exc)})
            continue
        if changed:
            cancelled.append(reservation_id)

    with session(engine) as s:
        booking = _get_booking(s, booking_id)
        cancelled_flights: list[str] = []
        for f in booking.flights:
            if f.id in plan.flight_ids and f.status != "CANCELLED":
                f.status = "CANCELLED"
                cancelled_flights.append(f.id)

        if _all_items_cancelled(booking) or (plan.full and not failed):
            booking.status = "CANCELLED"
            booking.hold_expires_at = None
        booking.updated_at = now
        s.commit()
        _ = (booking.reservations, booking.flights)

    outcome = CancellationOutcome(
        booking=booking,
        initiated_by=plan.initiated_by,
        cancelled_reservation_ids=cancelled,
        cancelled_flight_ids=cancelled_flights,
    )
    logger.info(
        "Booking cancellation (booking_id=%s scope=%s by=%s reservations=%s flights=%s failed=%s status=%s)",
        booking_id,
        scope,
        plan.initiated_by,
        cancelled,
        cancelled_flights,
        [f["reservation_id"] for f in failed],
        booking.status,
    )

    if cancelled or cancelled_flights:
        await _notify_cancelled(principal, outcome)

    if failed:
        raise PartialFailureError(
            f"Cancelled {len(cancelled)} of {len(plan.reservation_ids)} reservations",
            succeeded=cancelled,
            failed=failed,
        )
    return outcome


async def cancel_reservation(engine: Engine, principal: dict, reservation_id: str) -> Reservation:
    now = _now()
    with session(engine) as s:
        reservation = s.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        booking = reservation.booking

        if booking.user_id == principal.get("sub"):
            initiated_by = "user"
        elif principal.get("role") == "hotel_owner" and _hotel_owner_id(reservation) == principal.get("sub"):
            initiated_by = "hotel"
        else:
            raise AuthorizationError("Not allowed to cancel this reservation")

        if not _release_reservation(s, reservation, now):
            raise InvalidStateError("Reservation is already cancelled")

        if _all_items_cancelled(booking):
            booking.status = "CANCELLED"
            booking.hold_expires_at = None
        booking.updated_at = now
        s.commit()
        _ = (booking.reservations, booking.flights)

    outcome = CancellationOutcome(booking=booking, initiated_by=initiated_by, cancelled_reservation_ids=[reservation.id])
    logger.info("Reservation cancelled (reservation_id=%s by=%s)", reservation.id, initiated_by)
    await _notify_cancelled(principal, outcome)
    return reservation
