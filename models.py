from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import JSON, DateTime
from sqlmodel import Field, SQLModel

from periods import normalize_periods


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class SlotKind(str, Enum):
    RESERVATION = "reservation"
    TEMPLATE_LOCK = "template-lock"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"


# Application order for bulk runs
PRIORITY_ORDER = (Priority.CRITICAL, Priority.HIGH, Priority.NORMAL)


class Category(str, Enum):
    REGULAR_CLASS = "regular_class"
    CLUB_ACTIVITY = "club_activity"
    COMMITTEE = "committee"
    SPECIAL_CLASS = "special_class"
    OTHER = "other"


class Room(SQLModel, table=True):
    __tablename__ = "rooms"

    id: str = Field(primary_key=True)
    name: str
    capacity: Optional[int] = None
    description: Optional[str] = None


class Reservation(SQLModel, table=True):
    __tablename__ = "reservations"

    id: str = Field(default_factory=new_id, primary_key=True)
    room_id: str = Field(index=True)
    room_name: str
    title: str
    owner_name: str
    booking_date: date = Field(index=True)
    start_time: datetime = Field(sa_type=DateTime(timezone=True))
    end_time: datetime = Field(sa_type=DateTime(timezone=True))
    period: str  # canonical comma list, e.g. "1,2,3"
    period_label: str
    created_by: str
    template_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def tokens(self) -> Tuple[str, ...]:
        return normalize_periods(self.period)


class Slot(SQLModel, table=True):
    """Exclusive occupancy of one (room, date, period).

    The primary key is the slot key, so the database itself refuses a second
    occupant for the same cell.
    """

    __tablename__ = "reservation_slots"

    key: str = Field(primary_key=True)
    room_id: str = Field(index=True)
    booking_date: date = Field(index=True)
    period: str
    kind: SlotKind = Field(default=SlotKind.RESERVATION, index=True)
    reservation_id: Optional[str] = None
    template_id: Optional[str] = Field(default=None, index=True)
    created_by: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class WeeklyTemplate(SQLModel, table=True):
    __tablename__ = "recurring_templates"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    room_id: str = Field(index=True)
    weekdays: List[int] = Field(default_factory=list, sa_type=JSON)  # Monday == 0
    periods: List[str] = Field(default_factory=list, sa_type=JSON)
    start_date: date
    end_date: Optional[date] = None
    priority: Priority = Priority.NORMAL
    category: Category = Category.OTHER
    enabled: bool = Field(default=True, index=True)
    owner_name: Optional[str] = None
    description: Optional[str] = None
    created_by: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    def covers(self, day: date) -> bool:
        """True when day falls on one of the weekdays inside the validity window."""
        if day.weekday() not in self.weekdays:
            return False
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date
