from datetime import date

import pytest

from conftest import MONDAY
from models import Priority, Reservation, Slot
from schemas import ApplyMode, BulkApplyOptions, ConflictAction
from semesters import Semester
from slots import slot_key

ASSEMBLY_DAY = date(2025, 5, 12)


async def test_critical_template_overrides_manual_booking(orchestrator, engine, store, make_draft, make_template):
    booking_x = await engine.create(make_draft(room_id="A", day=ASSEMBLY_DAY, periods="3", title="X"))
    assembly = make_template(name="Weekly Assembly", priority=Priority.CRITICAL, periods=("3",))

    result = await orchestrator.apply(ASSEMBLY_DAY, ASSEMBLY_DAY, BulkApplyOptions(), templates=[assembly])

    assert result.applied == 1
    assert result.overridden == 1
    (conflict,) = result.conflicts
    assert conflict.date == ASSEMBLY_DAY
    assert conflict.room_id == "A"
    assert conflict.period == "3"
    assert conflict.action == ConflictAction.OVERRIDDEN
    assert conflict.existing.id == booking_x
    assert await store.get(Reservation, booking_x) is None
    slot = await store.get(Slot, slot_key("A", ASSEMBLY_DAY, "3"))
    assert (await store.get(Reservation, slot.reservation_id)).template_id == assembly.id


async def test_second_materialize_run_creates_nothing(orchestrator, template_service, store, admin, make_template):
    await template_service.upsert(make_template(weekdays=(0, 2, 4), periods=("1", "2")), admin)
    start, end = date(2025, 4, 1), date(2025, 4, 30)

    first = await orchestrator.apply(start, end)
    created = len(await store.query(Reservation))
    second = await orchestrator.apply(start, end)

    assert first.applied == created > 0
    assert second.applied == 0
    assert second.unchanged == created
    assert len(await store.query(Reservation)) == created


async def test_templates_apply_in_priority_order(orchestrator, template_service, store, admin, make_template):
    # Both target the same cell; the critical one must win regardless of insertion order
    await template_service.upsert(make_template(name="Club", priority=Priority.NORMAL), admin)
    await template_service.upsert(make_template(name="Exam", priority=Priority.CRITICAL), admin)

    result = await orchestrator.apply(MONDAY, MONDAY)

    assert result.applied == 1
    assert result.skipped == 1
    assert result.conflicts[0].template.name == "Club"
    (reservation,) = await store.query(Reservation)
    assert reservation.title == "Exam"


@pytest.mark.parametrize("mode, conflicts", [(ApplyMode.MATERIALIZE, 1), (ApplyMode.LOCK, 0)])
async def test_dry_run_sees_claims_of_higher_tiers(
    orchestrator, template_service, store, admin, make_template, mode, conflicts
):
    await template_service.upsert(make_template(name="Club", priority=Priority.NORMAL), admin)
    await template_service.upsert(make_template(name="Exam", priority=Priority.CRITICAL), admin)

    preview = await orchestrator.apply(MONDAY, MONDAY, BulkApplyOptions(dry_run=True, mode=mode))

    assert (preview.applied, preview.skipped, len(preview.conflicts)) == (1, 1, conflicts)
    assert await store.query(Slot) == []
    if conflicts:
        assert preview.conflicts[0].template.name == "Club"
        assert preview.conflicts[0].existing.title == "Exam"

    real = await orchestrator.apply(MONDAY, MONDAY, BulkApplyOptions(mode=mode))
    assert (real.applied, real.skipped, len(real.conflicts)) == (1, 1, conflicts)


async def test_dry_run_follows_relocated_bookings(
    orchestrator, engine, template_service, store, admin, make_draft, make_template
):
    booking = await engine.create(make_draft(room_id="A", periods="1", title="Choir"))
    await template_service.upsert(make_template(name="Lab", room_id="A", priority=Priority.HIGH), admin)
    await template_service.upsert(make_template(name="Club", room_id="B", priority=Priority.NORMAL), admin)

    preview = await orchestrator.apply(MONDAY, MONDAY, BulkApplyOptions(dry_run=True))

    assert [c.action for c in preview.conflicts] == [ConflictAction.RELOCATED, ConflictAction.SKIPPED]
    assert preview.conflicts[1].existing.id == booking
    assert preview.applied == 1
    assert (await engine.get(booking)).room_id == "A"

    real = await orchestrator.apply(MONDAY, MONDAY)
    assert [c.action for c in real.conflicts] == [ConflictAction.RELOCATED, ConflictAction.SKIPPED]
    assert real.applied == preview.applied


async def test_summary_counts_templates_and_outcomes(orchestrator, template_service, admin, make_template):
    await template_service.upsert(make_template(name="Club", priority=Priority.NORMAL), admin)
    await template_service.upsert(make_template(name="Exam", priority=Priority.CRITICAL), admin)

    result = await orchestrator.apply(MONDAY, MONDAY)

    assert result.summary.model_dump() == {"total": 2, "success": 1, "failed": 1, "warnings": 1}
    assert result.model_dump()["summary"]["total"] == 2


async def test_dry_run_lists_conflicts_without_writing(orchestrator, engine, store, make_draft, make_template):
    booking = await engine.create(make_draft(periods="1"))
    template = make_template(priority=Priority.HIGH, periods=("1", "2"))

    result = await orchestrator.apply(MONDAY, MONDAY, BulkApplyOptions(dry_run=True), templates=[template])

    assert result.applied == 2
    assert result.relocated == 1
    assert result.conflicts[0].action == ConflictAction.RELOCATED
    assert result.conflicts[0].new_location.room_id == "B"
    assert [r.id for r in await store.query(Reservation)] == [booking]
    assert (await engine.get(booking)).room_id == "A"


async def test_priority_filter_restricts_tier(orchestrator, template_service, store, admin, make_template):
    await template_service.upsert(make_template(name="Exam", priority=Priority.CRITICAL), admin)
    await template_service.upsert(make_template(name="Club", room_id="B", priority=Priority.NORMAL), admin)

    result = await orchestrator.apply(MONDAY, MONDAY, BulkApplyOptions(priority=Priority.NORMAL))

    assert result.applied == 1
    (reservation,) = await store.query(Reservation)
    assert reservation.room_id == "B"


async def test_force_override_escalates_every_template(orchestrator, engine, store, make_draft, make_template):
    booking = await engine.create(make_draft(periods="1"))

    result = await orchestrator.apply(
        MONDAY, MONDAY, BulkApplyOptions(force_override=True), templates=[make_template()]
    )

    assert result.overridden == 1 and result.applied == 1
    assert await store.get(Reservation, booking) is None


async def test_disabled_templates_are_ignored(orchestrator, template_service, store, admin, make_template):
    await template_service.upsert(make_template(enabled=False), admin)

    result = await orchestrator.apply(MONDAY, MONDAY)

    assert result.applied == 0
    assert await store.query(Reservation) == []


async def test_apply_semester_in_lock_mode(orchestrator, template_service, store, admin, make_template):
    await template_service.upsert(make_template(end_date=None), admin)

    result = await orchestrator.apply_semester(2025, Semester.SUMMER, BulkApplyOptions(mode=ApplyMode.LOCK))

    # Mondays in August 2025: 4, 11, 18, 25
    assert result.applied == 4
    assert len(await store.query(Slot, date_range=(date(2025, 8, 1), date(2025, 8, 31)))) == 4


async def test_apply_current_semester(orchestrator, template_service, admin, make_template):
    await template_service.upsert(make_template(), admin)

    result = await orchestrator.apply_current_semester(
        BulkApplyOptions(dry_run=True), today=date(2025, 4, 20)
    )

    # Mondays from 2025-04-07 through 2025-07-28
    assert result.applied == 17
