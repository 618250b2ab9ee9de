"""Domain errors raised by the inventory and reservation modules.

HTTP mapping lives in ``app.main``; nothing here knows about FastAPI.
"""

from __future__ import annotations

from datetime import date


class ReservationError(Exception):
    """Base class for every domain failure."""

    def payload(self) -> dict:
        return {"error": str(self)}


class InvalidRangeError(ReservationError):
    """Check-out not after check-in, or a non-positive room count."""


class NotFoundError(ReservationError):
    """Referenced hotel, room type, reservation or booking does not exist."""


class AuthorizationError(ReservationError):
    """Caller is neither the booking owner nor an operator of the hotels involved."""


class InvalidStateError(ReservationError):
    """Status transition not allowed from the current state."""


class PaymentFailedError(ReservationError):
    """Checkout received a failed payment signal."""


class RoomsUnavailableError(ReservationError):
    def __init__(self, unavailable_dates: list[date], message: str = "Rooms not available for selected dates"):
        super().__init__(message)
        self.unavailable_dates = list(unavailable_dates)

    def payload(self) -> dict:
        return {
            "error": str(self),
            "unavailable_dates": [d.isoformat() for d in self.unavailable_dates],
        }


class CapacityConflictError(ReservationError):
    """
    Capacity (or a per-date override) would drop below rooms already booked.

    ``max_rooms_needed`` is the minimum viable value; ``conflict_date`` is set
    when a single date is the culprit.
    """

    def __init__(self, max_rooms_needed: int, conflict_date: date | None = None, message: str | None = None):
        super().__init__(message or "Cannot reduce room count below existing reservation requirements")
        self.max_rooms_needed = max_rooms_needed
        self.conflict_date = conflict_date

    def payload(self) -> dict:
        out = {"error": str(self), "max_rooms_needed": self.max_rooms_needed}
        if self.conflict_date is not None:
            out["date"] = self.conflict_date.isoformat()
        return out


class PartialFailureError(ReservationError):
    """A multi-item operation completed some sub-operations and failed others."""

    def __init__(self, message: str, succeeded: list, failed: list):
        super().__init__(message)
        self.succeeded = list(succeeded)
        self.failed = list(failed)

    def payload(self) -> dict:
        return {
            "error": str(self),
            "succeeded": [_jsonable(x) for x in self.succeeded],
            "failed": [_jsonable(x) for x in self.failed],
        }


def _jsonable(value):
    if isinstance(value, date):
        return value.isoformat()
    return value
