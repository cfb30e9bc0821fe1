from datetime import date

import pytest

from conftest import MONDAY, TUESDAY
from errors import NotFoundError, PermissionDeniedError, SlotOccupiedError, ValidationError
from models import Reservation, Slot, SlotKind
from ports import Actor
from schemas import ApplyMode
from slots import slot_key
from weekly_templates import DEFAULT_OWNER_NAME, occurrence_dates

WEEK_END = date(2025, 4, 13)


def test_occurrence_dates_follow_weekdays_and_window(make_template):
    template = make_template(weekdays=(0, 2), start_date=date(2025, 4, 8))

    assert list(occurrence_dates(template, MONDAY, WEEK_END)) == [date(2025, 4, 9)]
    assert list(occurrence_dates(template, date(2025, 7, 28), date(2025, 8, 10))) == [
        date(2025, 7, 28),
        date(2025, 7, 30),
    ]


async def test_lock_mode_places_placeholders_once(template_engine, store, make_template):
    template = make_template(periods=("1", "2"))

    first = await template_engine.apply(template, MONDAY, WEEK_END, ApplyMode.LOCK)
    second = await template_engine.apply(template, MONDAY, WEEK_END, ApplyMode.LOCK)

    assert first.applied == 2
    assert second.applied == 0 and second.unchanged == 2
    slot = await store.get(Slot, slot_key("A", MONDAY, "1"))
    assert slot.kind == SlotKind.TEMPLATE_LOCK
    assert slot.template_id == template.id


async def test_materialize_creates_reservation_per_period(template_engine, store, make_template):
    template = make_template(periods=("1", "2"))

    result = await template_engine.apply(template, MONDAY, WEEK_END, ApplyMode.MATERIALIZE)

    assert result.applied == 2 and result.success
    reservations = await store.query(Reservation, template_id=template.id)
    assert sorted(r.period for r in reservations) == ["1", "2"]
    assert all(r.title == "Homeroom" for r in reservations)
    assert all(r.owner_name == DEFAULT_OWNER_NAME for r in reservations)
    assert all(r.booking_date == MONDAY for r in reservations)


async def test_materialize_converts_own_locks(template_engine, store, make_template):
    template = make_template()
    await template_engine.apply(template, MONDAY, WEEK_END, ApplyMode.LOCK)

    result = await template_engine.apply(template, MONDAY, WEEK_END, ApplyMode.MATERIALIZE)

    assert result.applied == 1
    slot = await store.get(Slot, slot_key("A", MONDAY, "1"))
    assert slot.kind == SlotKind.RESERVATION


async def test_foreign_lock_is_skipped(template_engine, make_template):
    await template_engine.apply(make_template(name="Lab"), MONDAY, WEEK_END, ApplyMode.LOCK)

    result = await template_engine.apply(make_template(name="Homeroom"), MONDAY, WEEK_END)

    assert result.skipped == 1 and result.applied == 0
    assert result.conflicts == []


async def test_unit_failure_is_recorded_and_run_continues(template_engine, engine, make_template, monkeypatch):
    calls = []

    async def flaky_lock(template, day, period):
        calls.append(period)
        if period == "1":
            raise SlotOccupiedError(template.room_id, day, period)
        return True

    monkeypatch.setattr(engine, "place_lock", flaky_lock)

    result = await template_engine.apply(make_template(periods=("1", "2")), MONDAY, WEEK_END, ApplyMode.LOCK)

    assert calls == ["1", "2"]
    assert result.applied == 1
    assert len(result.errors) == 1 and not result.success


async def test_dry_run_claims_nothing(template_engine, store, make_template):
    result = await template_engine.apply(make_template(), MONDAY, WEEK_END, dry_run=True)

    assert result.applied == 1
    assert await store.query(Slot) == []


async def test_cleanup_removes_only_the_templates_artifacts(template_engine, store, engine, make_template, make_draft):
    mine = make_template(periods=("1", "2"))
    other = make_template(name="Other", room_id="B")
    await template_engine.apply(mine, MONDAY, WEEK_END, ApplyMode.LOCK)
    await template_engine.apply(mine, TUESDAY, WEEK_END, ApplyMode.MATERIALIZE)
    await template_engine.apply(other, MONDAY, WEEK_END, ApplyMode.LOCK)
    manual = await engine.create(make_draft(periods="3"))

    result = await template_engine.cleanup(mine.id)

    assert result.locks_removed == 2
    assert result.reservations_removed == 0
    remaining = await store.query(Slot)
    assert {s.key for s in remaining} == {slot_key("B", MONDAY, "1"), slot_key("A", MONDAY, "3")}
    assert await store.get(Reservation, manual) is not None


async def test_cleanup_of_materialized_reservations(template_engine, store, make_template):
    template = make_template(weekdays=(0, 1))
    await template_engine.apply(template, MONDAY, WEEK_END)

    result = await template_engine.cleanup(template.id, start=TUESDAY, locks=False)

    assert result.reservations_removed == 1
    assert [r.booking_date for r in await store.query(Reservation)] == [MONDAY]


async def test_template_mutations_require_admin(template_service, make_template):
    teacher = Actor(id="teacher-1")

    with pytest.raises(PermissionDeniedError):
        await template_service.upsert(make_template(), teacher)


async def test_upsert_normalizes_and_stamps(template_service, admin, make_template):
    template = make_template(periods=["3", "1", "lunch"], weekdays=[2, 0, 2])

    saved = await template_service.upsert(template, admin)
    assert saved.periods == ["1", "3", "lunch"]
    assert saved.weekdays == [0, 2]

    editor = Actor(id="admin-2", is_admin=True)
    update = make_template(id=saved.id, name="Homeroom 2", created_by="admin-2")
    updated = await template_service.upsert(update, editor)

    assert updated.created_by == "admin-1"
    assert updated.updated_by == "admin-2"
    assert updated.updated_at is not None
    assert [t.name for t in await template_service.list()] == ["Homeroom 2"]


@pytest.mark.parametrize(
    "changes",
    [
        {"weekdays": []},
        {"weekdays": [7]},
        {"periods": []},
        {"periods": ["9"]},
        {"end_date": date(2025, 3, 1)},
        {"name": " "},
    ],
)
async def test_upsert_rejects_invalid_templates(template_service, admin, make_template, changes):
    with pytest.raises(ValidationError):
        await template_service.upsert(make_template(**changes), admin)


async def test_remove_template(template_service, admin, make_template):
    saved = await template_service.upsert(make_template(), admin)

    await template_service.remove(saved.id, admin)

    assert await template_service.list() == []
    with pytest.raises(NotFoundError):
        await template_service.remove(saved.id, admin)
