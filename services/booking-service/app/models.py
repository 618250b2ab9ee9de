from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Hotel(Base):
    __tablename__ = "hotels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    room_types: Mapped[list[RoomType]] = relationship(back_populates="hotel")


class RoomType(Base):
    __tablename__ = "room_types"
    __table_args__ = (CheckConstraint("total_rooms >= 0", name="ck_room_types_total_rooms"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    hotel_id: Mapped[str] = mapped_column(String, ForeignKey("hotels.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    price_per_night: Mapped[int] = mapped_column(Integer)  # cents
    total_rooms: Mapped[int] = mapped_column(Integer, default=0)  # capacity ceiling
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    hotel: Mapped[Hotel] = relationship(back_populates="room_types")


class RoomAvailability(Base):
    """
    Rooms of a room type still bookable for one night.

    Rows are created lazily: a night without a row is fully available
    (``total_rooms``). Writes go through ``app.store`` so every adjustment is
    a single conditional statement.
    """

    __tablename__ = "room_availability"
    __table_args__ = (
        UniqueConstraint("room_type_id", "date", name="uq_room_availability_room_type_date"),
        CheckConstraint("available_rooms >= 0", name="ck_room_availability_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    room_type_id: Mapped[str] = mapped_column(String, ForeignKey("room_types.id"), index=True)
    date: Mapped[date] = mapped_column(Date, index=True)
    available_rooms: Mapped[int] = mapped_column(Integer)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    status: Mapped[str] = mapped_column(String, index=True)  # PENDING|CONFIRMED|CANCELLED
    total_price: Mapped[int] = mapped_column(Integer, default=0)  # cents

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    reservations: Mapped[list[Reservation]] = relationship(back_populates="booking", order_by="Reservation.created_at")
    flights: Mapped[list[FlightLeg]] = relationship(back_populates="booking", order_by="FlightLeg.departure_time")


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("check_in_date < check_out_date", name="ck_reservations_range"),
        CheckConstraint("rooms_booked >= 1", name="ck_reservations_rooms_booked"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)
    room_type_id: Mapped[str] = mapped_column(String, ForeignKey("room_types.id"), index=True)

    check_in_date: Mapped[date] = mapped_column(Date, index=True)
    check_out_date: Mapped[date] = mapped_column(Date, index=True)  # exclusive
    rooms_booked: Mapped[int] = mapped_column(Integer)
    price: Mapped[int] = mapped_column(Integer, default=0)  # cents

    status: Mapped[str] = mapped_column(String, index=True)  # PENDING|CONFIRMED|CANCELLED
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship(back_populates="reservations")
    room_type: Mapped[RoomType] = relationship()


class FlightLeg(Base):
    """Flight item bundled into a booking. Seats are owned by the external flight API."""

    __tablename__ = "flight_legs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)

    external_flight_id: Mapped[str] = mapped_column(String, index=True)
    source: Mapped[str] = mapped_column(String)
    destination: Mapped[str] = mapped_column(String)
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    arrival_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    price: Mapped[int] = mapped_column(Integer, default=0)  # cents

    status: Mapped[str] = mapped_column(String, index=True)  # PENDING|CONFIRMED|CANCELLED

    booking: Mapped[Booking] = relationship(back_populates="flights")
