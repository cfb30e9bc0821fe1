"""Error hierarchy for the reservation core.

Every failure the core reports is a ReservationError, so callers (the HTTP
layer, bulk runs) can classify them without catching arbitrary exceptions.
TransientStorageError is the only retryable class, and only delete retries it.
"""

from datetime import date
from typing import Optional


class ReservationError(Exception):
    """Base exception for all reservation core errors."""

    pass


class ValidationError(ReservationError):
    """Malformed input: bad period expression, missing field, bad range."""

    pass


class SlotOccupiedError(ReservationError):
    """A live reservation holds the requested (room, date, period) slot."""

    def __init__(
        self,
        room_id: str,
        booking_date: date,
        period: str,
        reservation_id: Optional[str] = None,
    ):
        self.room_id = room_id
        self.booking_date = booking_date
        self.period = period
        self.reservation_id = reservation_id
        super().__init__(
            f"Room {room_id} is already booked on {booking_date.isoformat()} for period {period}"
        )


class NotFoundError(ReservationError):
    """A reservation or template id does not exist."""

    pass


class PermissionDeniedError(ReservationError):
    """The caller's authorization decision rejected the operation."""

    pass


class StorageError(ReservationError):
    """The backing store failed in a way retrying will not fix."""

    pass


class TransientStorageError(StorageError):
    """Contention, rate limiting or an aborted transaction.

    Retried with backoff by delete; create and move surface it immediately.
    """

    pass
