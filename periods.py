"""Period tokens, period expressions and the default period calendar.

A booking names its periods with an expression: a single token ("3"), a
comma list ("1,2,lunch") or a contiguous range ("4-6"). Expressions are
parsed once into a tagged union and normalized into an ordered tuple of
atomic tokens; everything downstream works on that tuple only.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Dict, Iterable, Optional, Protocol, Tuple, Union
from zoneinfo import ZoneInfo

import config
from errors import ValidationError

PERIOD_ORDER: Tuple[str, ...] = ("0", "1", "2", "3", "4", "lunch", "5", "6", "7", "after")

_NAMED_LABELS = {"lunch": "Lunch break", "after": "After school"}

# token -> (start, end)
PERIOD_TIMES: Dict[str, Tuple[str, str]] = {
    "0": ("07:30", "08:30"),
    "1": ("08:50", "09:40"),
    "2": ("09:50", "10:40"),
    "3": ("10:50", "11:40"),
    "4": ("11:50", "12:40"),
    "lunch": ("12:40", "13:25"),
    "5": ("13:25", "14:15"),
    "6": ("14:25", "15:15"),
    "7": ("15:25", "16:15"),
    "after": ("16:25", "18:00"),
}

# After-school starts right after period 7 on Tuesday, Thursday and Friday
_EARLY_AFTER_WEEKDAYS = {1, 3, 4}
_EARLY_AFTER_START = "15:25"


@dataclass(frozen=True)
class SinglePeriod:
    token: str


@dataclass(frozen=True)
class PeriodList:
    tokens: Tuple[str, ...]


@dataclass(frozen=True)
class PeriodRange:
    start: str
    end: str


PeriodExpression = Union[SinglePeriod, PeriodList, PeriodRange]


def _clean(token) -> str:
    return str(token).strip().lower()


def _check(token: str) -> str:
    if token not in PERIOD_ORDER:
        raise ValidationError(f"Unknown period {token!r}")
    return token


def parse_period_expression(text: str) -> PeriodExpression:
    raw = (text or "").strip()
    if not raw:
        raise ValidationError("Period expression is empty")
    if "," in raw:
        tokens = tuple(_clean(part) for part in raw.split(",") if part.strip())
        return PeriodList(tokens)
    if "-" in raw:
        start, _, end = raw.partition("-")
        return PeriodRange(_clean(start), _clean(end))
    return SinglePeriod(_clean(raw))


def normalize_periods(
    value: Union[PeriodExpression, str, int, Iterable],
) -> Tuple[str, ...]:
    """Return the ordered, de-duplicated atomic tokens of a period expression.

    Accepts an expression, its text form, a bare token, or an iterable of
    tokens (treated as a list).
    """
    if isinstance(value, (str, int)):
        value = parse_period_expression(str(value))
    elif not isinstance(value, (SinglePeriod, PeriodList, PeriodRange)):
        value = PeriodList(tuple(_clean(token) for token in value))

    if isinstance(value, SinglePeriod):
        return (_check(value.token),)

    if isinstance(value, PeriodRange):
        first = PERIOD_ORDER.index(_check(value.start))
        last = PERIOD_ORDER.index(_check(value.end))
        if first > last:
            raise ValidationError(f"Period range {value.start}-{value.end} is reversed")
        return PERIOD_ORDER[first:last + 1]

    tokens = {_check(token) for token in value.tokens}
    if not tokens:
        raise ValidationError("Period expression is empty")
    return tuple(sorted(tokens, key=PERIOD_ORDER.index))


def canonical_expression(tokens: Iterable[str]) -> str:
    return ",".join(tokens)


def display_label(token: str) -> str:
    return _NAMED_LABELS.get(token, f"Period {token}")


def period_label(tokens: Tuple[str, ...]) -> str:
    if len(tokens) == 1:
        return display_label(tokens[0])
    indexes = [PERIOD_ORDER.index(token) for token in tokens]
    if indexes == list(range(indexes[0], indexes[-1] + 1)):
        return f"{display_label(tokens[0])} - {display_label(tokens[-1])}"
    return ", ".join(display_label(token) for token in tokens)


@dataclass(frozen=True)
class PeriodWindow:
    start: datetime
    end: datetime
    label: str


class PeriodCalendar(Protocol):
    """Maps a period token on a date to its wall-clock window."""

    def window(self, booking_date: date, token: str) -> PeriodWindow:
        ...


class DefaultPeriodCalendar:
    """The school timetable in the configured time zone."""

    def __init__(self, time_zone: Optional[str] = None):
        self.tz = ZoneInfo(time_zone or config.TIME_ZONE)

    def window(self, booking_date: date, token: str) -> PeriodWindow:
        start, end = PERIOD_TIMES[_check(token)]
        if token == "after" and booking_date.weekday() in _EARLY_AFTER_WEEKDAYS:
            start = _EARLY_AFTER_START
        return PeriodWindow(
            start=datetime.combine(booking_date, time.fromisoformat(start), tzinfo=self.tz),
            end=datetime.combine(booking_date, time.fromisoformat(end), tzinfo=self.tz),
            label=display_label(token),
        )


def span(calendar: PeriodCalendar, booking_date: date, tokens: Tuple[str, ...]) -> PeriodWindow:
    """Window from the first token's start to the last token's end."""
    first = calendar.window(booking_date, tokens[0])
    last = calendar.window(booking_date, tokens[-1])
    return PeriodWindow(start=first.start, end=last.end, label=period_label(tokens))


def local_date(instant: datetime) -> date:
    """Calendar date of an instant in the configured time zone."""
    if instant.tzinfo is None:
        return instant.date()
    return instant.astimezone(ZoneInfo(config.TIME_ZONE)).date()
