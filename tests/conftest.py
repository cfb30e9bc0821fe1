from datetime import date

import pytest

from bulk import BulkApplicationOrchestrator
from conflicts import ConflictResolutionEngine
from models import Priority, Room, WeeklyTemplate
from periods import DefaultPeriodCalendar, normalize_periods, span
from ports import Actor, MemoryAuditSink, StoreRoomDirectory
from reservations import ReservationTransactionEngine
from schemas import ReservationDraft
from storage import MemoryStore
from weekly_templates import TemplateEngine, TemplateService

MONDAY = date(2025, 4, 7)
TUESDAY = date(2025, 4, 8)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
async def rooms(store):
    for room_id, name in (("A", "Room A"), ("B", "Room B"), ("C", "Room C")):
        await store.save(Room(id=room_id, name=name, capacity=40))
    return StoreRoomDirectory(store)


@pytest.fixture
def calendar():
    return DefaultPeriodCalendar("Asia/Tokyo")


@pytest.fixture
def engine(store, calendar, rooms):
    return ReservationTransactionEngine(store, calendar, rooms, delete_backoff=0)


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def conflict_engine(engine, rooms, audit):
    return ConflictResolutionEngine(engine, rooms, audit)


@pytest.fixture
def conflicts(conflict_engine):
    return conflict_engine


@pytest.fixture
def template_service(store):
    return TemplateService(store)


@pytest.fixture
def template_engine(store, engine, conflict_engine, calendar):
    return TemplateEngine(store, engine, conflict_engine, calendar)


@pytest.fixture
def orchestrator(template_service, template_engine):
    return BulkApplicationOrchestrator(template_service, template_engine)


@pytest.fixture
def admin():
    return Actor(id="admin-1", is_admin=True)


@pytest.fixture
def make_draft(calendar):
    def _make(room_id="A", day=MONDAY, periods="1", title="Math", created_by="teacher-1", **extra):
        window = span(calendar, day, normalize_periods(periods))
        return ReservationDraft(
            room_id=room_id,
            title=title,
            owner_name="Tanaka",
            start=window.start,
            end=window.end,
            periods=periods,
            created_by=created_by,
            **extra,
        )

    return _make


@pytest.fixture
def make_template():
    def _make(name="Homeroom", room_id="A", priority=Priority.NORMAL, weekdays=(0,), periods=("1",), **extra):
        values = dict(
            name=name,
            room_id=room_id,
            weekdays=list(weekdays),
            periods=list(periods),
            start_date=date(2025, 4, 1),
            end_date=date(2025, 7, 31),
            priority=priority,
            created_by="admin-1",
        )
        values.update(extra)
        return WeeklyTemplate(**values)

    return _make
