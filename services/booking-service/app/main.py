from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from . import capacity, lifecycle
from .availability import availability_for_range, check_availability, get_room_type
from .db import get_engine, session
from .errors import (
    AuthorizationError,
    CapacityConflictError,
    InvalidRangeError,
    InvalidStateError,
    NotFoundError,
    PartialFailureError,
    PaymentFailedError,
    ReservationError,
    RoomsUnavailableError,
)
from .models import Booking, FlightLeg, Hotel, Reservation, RoomType
from .security import get_principal, require_roles

app = FastAPI(
    title="Hotel Booking & Inventory Service",
    version="0.1.0",
    description="Per-night room inventory, availability checks, reservation holds, checkout and scoped cancellation for hotel + flight bookings.",
)

_STATUS_BY_ERROR: list[tuple[type[ReservationError], int]] = [
    (InvalidRangeError, 400),
    (PaymentFailedError, 402),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (RoomsUnavailableError, 409),
    (CapacityConflictError, 409),
    (InvalidStateError, 409),
    (PartialFailureError, 500),
]


def _status_for(exc: ReservationError) -> int:
    for cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status_code
    return 400


@app.exception_handler(ReservationError)
async def _reservation_error(_request: Request, exc: ReservationError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(exc), content={"detail": exc.payload()})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class HotelCreate(BaseModel):
    name: str = Field(min_length=1)


class HotelOut(BaseModel):
    id: str
    name: str
    owner_id: str


class RoomTypeCreate(BaseModel):
    name: str = Field(min_length=1)
    price_per_night: int = Field(ge=0, description="Cents")
    total_rooms: int = Field(default=0, ge=0)


class RoomTypeOut(BaseModel):
    id: str
    hotel_id: str
    name: str
    price_per_night: int
    total_rooms: int


class CapacityUpdate(BaseModel):
    total_rooms: int = Field(ge=0)


class AvailabilityDay(BaseModel):
    date: date
    available_rooms: int


class ReservationOut(BaseModel):
    id: str
    booking_id: str
    room_type_id: str
    check_in_date: date
    check_out_date: date
    rooms_booked: int
    price: int
    status: str


class AvailabilityOut(BaseModel):
    room_type: RoomTypeOut
    availability: list[AvailabilityDay]
    reservations: list[ReservationOut]


class AvailabilityOverride(BaseModel):
    start_date: date
    end_date: date | None = Field(default=None, description="Inclusive; defaults to start_date")
    available_rooms: int = Field(ge=0)


class AvailabilityCheckOut(BaseModel):
    available: bool
    unavailable_dates: list[date]


class HotelItemIn(BaseModel):
    hotel_id: str
    room_type_id: str
    check_in: date
    check_out: date
    rooms: int = Field(default=1, ge=1)


class FlightItemIn(BaseModel):
    external_flight_id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    departure_time: datetime
    arrival_time: datetime
    price: int = Field(default=0, ge=0, description="Cents")


class BookingCreate(BaseModel):
    booking_id: str | None = Field(default=None, description="Existing PENDING booking to add items to")
    hotel: HotelItemIn | None = None
    flights: list[FlightItemIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_items(self) -> "BookingCreate":
        if self.hotel is None and not self.flights:
            raise ValueError("Must provide either hotel booking or flight booking details")
        return self


class FlightLegOut(BaseModel):
    id: str
    external_flight_id: str
    source: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    price: int
    status: str


class BookingOut(BaseModel):
    id: str
    user_id: str
    status: str
    total_price: int
    created_at: datetime
    updated_at: datetime
    hold_expires_at: datetime | None
    reservations: list[ReservationOut]
    flights: list[FlightLegOut]


class ConfirmRequest(BaseModel):
    payment_succeeded: bool = Field(description="Outcome reported by the payment provider")


class CancelRequest(BaseModel):
    scope: Literal["all", "hotels", "flights"] = "all"


class CancelOut(BaseModel):
    booking: BookingOut
    initiated_by: str
    cancelled_reservation_ids: list[str]
    cancelled_flight_ids: list[str]


def _room_type_out(rt: RoomType) -> RoomTypeOut:
    return RoomTypeOut(
        id=rt.id,
        hotel_id=rt.hotel_id,
        name=rt.name,
        price_per_night=rt.price_per_night,
        total_rooms=rt.total_rooms,
    )


def _reservation_out(r: Reservation) -> ReservationOut:
    return ReservationOut(
        id=r.id,
        booking_id=r.booking_id,
        room_type_id=r.room_type_id,
        check_in_date=r.check_in_date,
        check_out_date=r.check_out_date,
        rooms_booked=r.rooms_booked,
        price=r.price,
        status=r.status,
    )


def _flight_out(f: FlightLeg) -> FlightLegOut:
    return FlightLegOut(
        id=f.id,
        external_flight_id=f.external_flight_id,
        source=f.source,
        destination=f.destination,
        departure_time=f.departure_time,
        arrival_time=f.arrival_time,
        price=f.price,
        status=f.status,
    )


def _booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        user_id=b.user_id,
        status=b.status,
        total_price=b.total_price,
        created_at=b.created_at,
        updated_at=b.updated_at,
        hold_expires_at=b.hold_expires_at,
        reservations=[_reservation_out(r) for r in b.reservations],
        flights=[_flight_out(f) for f in b.flights],
    )


def _room_type_in_hotel(s, hotel_id: str, room_type_id: str) -> RoomType:
    rt = get_room_type(s, room_type_id)
    if rt.hotel_id != hotel_id:
        raise HTTPException(status_code=404, detail="Room type not found")
    return rt


def _require_hotel_owner(s, hotel_id: str, principal: dict) -> Hotel:
    hotel = s.get(Hotel, hotel_id)
    if hotel is None:
        raise HTTPException(status_code=404, detail="Hotel not found")
    if hotel.owner_id != principal.get("sub"):
        raise HTTPException(status_code=403, detail="Hotel not found or unauthorized")
    return hotel


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/hotels", response_model=HotelOut)
def create_hotel(
    payload: HotelCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("hotel_owner")),
):
    hotel = Hotel(id=str(uuid4()), name=payload.name.strip(), owner_id=principal["sub"], created_at=_now())
    with session(engine) as s:
        s.add(hotel)
        s.commit()
    return HotelOut(id=hotel.id, name=hotel.name, owner_id=hotel.owner_id)


@app.post("/hotels/{hotel_id}/room-types", response_model=RoomTypeOut)
def create_room_type(
    hotel_id: str,
    payload: RoomTypeCreate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("hotel_owner")),
):
    with session(engine) as s:
        _require_hotel_owner(s, hotel_id, principal)
        rt = RoomType(
            id=str(uuid4()),
            hotel_id=hotel_id,
            name=payload.name.strip(),
            price_per_night=payload.price_per_night,
            total_rooms=payload.total_rooms,
            created_at=_now(),
        )
        s.add(rt)
        s.commit()
    return _room_type_out(rt)


@app.get("/hotels/{hotel_id}/room-types/{room_type_id}", response_model=RoomTypeOut)
def get_room_type_details(hotel_id: str, room_type_id: str, engine=Depends(get_engine)):
    with session(engine) as s:
        rt = _room_type_in_hotel(s, hotel_id, room_type_id)
    return _room_type_out(rt)


@app.put("/hotels/{hotel_id}/room-types/{room_type_id}/capacity", response_model=RoomTypeOut)
def update_capacity(
    hotel_id: str,
    room_type_id: str,
    payload: CapacityUpdate,
    engine=Depends(get_engine),
    principal=Depends(require_roles("hotel_owner")),
):
    with session(engine) as s:
        _require_hotel_owner(s, hotel_id, principal)
        _room_type_in_hotel(s, hotel_id, room_type_id)
    rt = capacity.set_room_type_capacity(engine, room_type_id, payload.total_rooms)
    return _room_type_out(rt)


@app.delete("/hotels/{hotel_id}/room-types/{room_type_id}")
def delete_room_type(
    hotel_id: str,
    room_type_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("hotel_owner")),
):
    with session(engine) as s:
        _require_hotel_owner(s, hotel_id, principal)
        _room_type_in_hotel(s, hotel_id, room_type_id)
    capacity.delete_room_type(engine, room_type_id)
    return {"message": "Room type deleted successfully"}


@app.get("/hotels/{hotel_id}/room-types/{room_type_id}/availability", response_model=AvailabilityOut)
def get_availability(
    hotel_id: str,
    room_type_id: str,
    start_date: date,
    end_date: date,
    engine=Depends(get_engine),
):
    with session(engine) as s:
        rt = _room_type_in_hotel(s, hotel_id, room_type_id)
        days = availability_for_range(s, room_type_id, start_date, end_date)
        reservations = (
            s.query(Reservation)
            .filter(Reservation.room_type_id == room_type_id)
            .filter(Reservation.status == "CONFIRMED")
            .filter(Reservation.check_in_date <= end_date)
            .filter(Reservation.check_out_date > start_date)
            .order_by(Reservation.check_in_date)
            .all()
        )
    return AvailabilityOut(
        room_type=_room_type_out(rt),
        availability=[AvailabilityDay(date=d, available_rooms=n) for d, n in days],
        reservations=[_reservation_out(r) for r in reservations],
    )


@app.post("/hotels/{hotel_id}/room-types/{room_type_id}/availability")
def override_availability(
    hotel_id: str,
    room_type_id: str,
    payload: AvailabilityOverride,
    engine=Depends(get_engine),
    principal=Depends(require_roles("hotel_owner")),
):
    with session(engine) as s:
        _require_hotel_owner(s, hotel_id, principal)
        _room_type_in_hotel(s, hotel_id, room_type_id)
    days = capacity.set_availability_override(
        engine,
        room_type_id,
        payload.start_date,
        payload.end_date or payload.start_date,
        payload.available_rooms,
    )
    return {
        "message": f"Successfully updated availability for {len(days)} dates",
        "start_date": days[0],
        "end_date": days[-1],
        "available_rooms": payload.available_rooms,
    }


@app.get("/hotels/{hotel_id}/room-types/{room_type_id}/availability/check", response_model=AvailabilityCheckOut)
def check_room_availability(
    hotel_id: str,
    room_type_id: str,
    check_in: date,
    check_out: date,
    rooms: int = 1,
    engine=Depends(get_engine),
):
    with session(engine) as s:
        _room_type_in_hotel(s, hotel_id, room_type_id)
        result = check_availability(s, room_type_id, check_in, check_out, rooms)
    return AvailabilityCheckOut(available=result.available, unavailable_dates=result.unavailable_dates)


@app.post("/bookings", response_model=BookingOut, status_code=201)
async def create_booking(
    payload: BookingCreate,
    engine=Depends(get_engine),
    principal=Depends(get_principal),
):
    hotel = payload.hotel
    booking, _ = await lifecycle.add_to_booking(
        engine,
        principal["sub"],
        room_type_id=hotel.room_type_id if hotel else None,
        check_in=hotel.check_in if hotel else None,
        check_out=hotel.check_out if hotel else None,
        rooms=hotel.rooms if hotel else 1,
        hotel_id=hotel.hotel_id if hotel else None,
        flights=[
            lifecycle.FlightItem(
                external_flight_id=f.external_flight_id,
                source=f.source,
                destination=f.destination,
                departure_time=f.departure_time,
                arrival_time=f.arrival_time,
                price=f.price,
            )
            for f in payload.flights
        ],
        booking_id=payload.booking_id,
    )
    return _booking_out(booking)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(get_principal),
):
    with session(engine) as s:
        booking = s.get(Booking, booking_id)
        if booking is None or not lifecycle.can_view_booking(booking, principal):
            raise HTTPException(status_code=404, detail="Booking not found")
        out = _booking_out(booking)
    return out


@app.post("/bookings/{booking_id}/confirm", response_model=BookingOut)
async def confirm_booking(
    booking_id: str,
    payload: ConfirmRequest,
    engine=Depends(get_engine),
    principal=Depends(get_principal),
):
    booking = await lifecycle.confirm_booking(engine, principal, booking_id, payload.payment_succeeded)
    return _booking_out(booking)


@app.post("/bookings/{booking_id}/cancel", response_model=CancelOut)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest | None = None,
    engine=Depends(get_engine),
    principal=Depends(get_principal),
):
    scope = payload.scope if payload else "all"
    outcome = await lifecycle.cancel_booking(engine, principal, booking_id, scope)
    return CancelOut(
        booking=_booking_out(outcome.booking),
        initiated_by=outcome.initiated_by,
        cancelled_reservation_ids=outcome.cancelled_reservation_ids,
        cancelled_flight_ids=outcome.cancelled_flight_ids,
    )


@app.post("/reservations/{reservation_id}/cancel", response_model=ReservationOut)
async def cancel_reservation(
    reservation_id: str,
    engine=Depends(get_engine),
    principal=Depends(get_principal),
):
    reservation = await lifecycle.cancel_reservation(engine, principal, reservation_id)
    return _reservation_out(reservation)
