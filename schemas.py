"""Records exchanged with the core: drafts, conflict reports, run results."""

import datetime as dt
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, computed_field

from models import Category, Priority, Reservation, WeeklyTemplate


class ReservationDraft(BaseModel):
    room_id: str
    room_name: Optional[str] = None
    title: str
    owner_name: str
    start: dt.datetime
    end: dt.datetime
    periods: Union[str, List[str]]
    created_by: str
    template_id: Optional[str] = None


class ConflictAction(str, Enum):
    OVERRIDDEN = "overridden"
    RELOCATED = "relocated"
    SKIPPED = "skipped"


class ApplyMode(str, Enum):
    LOCK = "lock"
    MATERIALIZE = "materialize"


class ReservationSummary(BaseModel):
    id: str
    title: str
    owner_name: str
    created_by: str
    period: str
    period_label: str

    @classmethod
    def of(cls, reservation: Reservation) -> "ReservationSummary":
        return cls(
            id=reservation.id,
            title=reservation.title,
            owner_name=reservation.owner_name,
            created_by=reservation.created_by,
            period=reservation.period,
            period_label=reservation.period_label,
        )


class TemplateSummary(BaseModel):
    id: str
    name: str
    room_id: str
    priority: Priority
    category: Category

    @classmethod
    def of(cls, template: WeeklyTemplate) -> "TemplateSummary":
        return cls(
            id=template.id,
            name=template.name,
            room_id=template.room_id,
            priority=template.priority,
            category=template.category,
        )


class Relocation(BaseModel):
    room_id: str
    room_name: str
    period: str


class ConflictInfo(BaseModel):
    date: dt.date
    room_id: str
    room_name: str
    period: str
    period_label: str
    existing: ReservationSummary
    template: TemplateSummary
    action: ConflictAction
    new_location: Optional[Relocation] = None


class BulkApplyOptions(BaseModel):
    dry_run: bool = False
    priority: Optional[Priority] = None
    force_override: bool = False
    mode: ApplyMode = ApplyMode.MATERIALIZE


class RunSummary(BaseModel):
    """Headline numbers for the operator screen."""

    total: int
    success: int
    failed: int
    warnings: int


class BulkApplyResult(BaseModel):
    templates: int = 0
    applied: int = 0
    overridden: int = 0
    relocated: int = 0
    skipped: int = 0
    unchanged: int = 0
    conflicts: List[ConflictInfo] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        return not self.errors

    @computed_field
    @property
    def summary(self) -> RunSummary:
        return RunSummary(
            total=self.templates,
            success=self.applied,
            failed=self.skipped + len(self.errors),
            warnings=len(self.conflicts),
        )

    def merge(self, other: "BulkApplyResult") -> "BulkApplyResult":
        self.templates += other.templates
        self.applied += other.applied
        self.overridden += other.overridden
        self.relocated += other.relocated
        self.skipped += other.skipped
        self.unchanged += other.unchanged
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        return self


class CleanupResult(BaseModel):
    locks_removed: int = 0
    reservations_removed: int = 0
