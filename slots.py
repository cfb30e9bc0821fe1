from datetime import date
from typing import Tuple

from errors import ValidationError

SEPARATOR = "_"


def slot_key(room_id: str, booking_date: date, period: str) -> str:
    """Deterministic identity of a (room, date, period) cell.

    The date is fixed-width ISO and the period never contains the separator,
    so the key splits back into exactly one triple.
    """
    if not room_id:
        raise ValidationError("Room id is required")
    period = str(period)
    if not period or SEPARATOR in period:
        raise ValidationError(f"Invalid period token {period!r}")
    return f"{room_id}{SEPARATOR}{booking_date.isoformat()}{SEPARATOR}{period}"


def parse_slot_key(key: str) -> Tuple[str, date, str]:
    head, _, period = key.rpartition(SEPARATOR)
    room_id, _, iso_date = head.rpartition(SEPARATOR)
    if not room_id or not period:
        raise ValidationError(f"Malformed slot key {key!r}")
    try:
        return room_id, date.fromisoformat(iso_date), period
    except ValueError as exc:
        raise ValidationError(f"Malformed slot key {key!r}") from exc
