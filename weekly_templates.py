"""Weekly recurring templates: administration and expansion into slots.

A template names a room, a set of weekdays and a set of period tokens over a
validity window. Applying it over a date range walks every (date, token)
unit and either places a lock placeholder or materializes a reservation,
handing foreign occupants to the conflict engine.
"""

from datetime import date, timedelta
from typing import Dict, Iterator, List, Optional, Set

from conflicts import ConflictResolutionEngine
from errors import NotFoundError, ReservationError, ValidationError
from log import get_logger
from models import Reservation, Slot, SlotKind, WeeklyTemplate, utcnow
from periods import PeriodCalendar, display_label, normalize_periods
from ports import Actor
from reservations import ReservationTransactionEngine, SlotOccupancy
from schemas import ApplyMode, BulkApplyResult, CleanupResult, ConflictAction, ConflictInfo, ReservationDraft
from slots import slot_key
from storage import Store

logger = get_logger(__name__)

DEFAULT_OWNER_NAME = "Recurring booking"


def occurrence_dates(template: WeeklyTemplate, start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        if template.covers(day):
            yield day
        day += timedelta(days=1)


class DryRunPlan:
    """Cell states a dry run would have produced.

    Later units of the same run read through it, so a preview reports the
    conflicts a real run would meet between templates. cells maps slot keys
    to their planned occupancy; vacated holds ids of reservations the run
    would have deleted or moved away.
    """

    def __init__(self):
        self.cells: Dict[str, SlotOccupancy] = {}
        self.vacated: Set[str] = set()

    def overlay(self, state: SlotOccupancy) -> SlotOccupancy:
        planned = self.cells.get(state.key)
        if planned is not None:
            return planned
        if state.reservation is not None and state.reservation.id in self.vacated:
            return SlotOccupancy(key=state.key)
        return state

    def occupy(self, reservation: Reservation, slots: List[Slot]) -> None:
        for slot in slots:
            self.cells[slot.key] = SlotOccupancy(key=slot.key, slot=slot, reservation=reservation)

    def lock(self, slot: Slot) -> None:
        self.cells[slot.key] = SlotOccupancy(key=slot.key, slot=slot)


class TemplateService:
    """Admin CRUD over weekly templates."""

    def __init__(self, store: Store):
        self._store = store

    async def list(self) -> List[WeeklyTemplate]:
        return await self._store.query(WeeklyTemplate)

    async def list_enabled(self) -> List[WeeklyTemplate]:
        return await self._store.query(WeeklyTemplate, enabled=True)

    async def get(self, template_id: str) -> WeeklyTemplate:
        template = await self._store.get(WeeklyTemplate, template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    @staticmethod
    def _validate(template: WeeklyTemplate) -> None:
        if not template.name or not template.name.strip():
            raise ValidationError("Template name is required")
        if not template.room_id:
            raise ValidationError("Template room is required")
        if not template.weekdays:
            raise ValidationError("Template needs at least one weekday")
        if any(not 0 <= day <= 6 for day in template.weekdays):
            raise ValidationError("Weekdays must be between 0 (Monday) and 6 (Sunday)")
        if not template.periods:
            raise ValidationError("Template needs at least one period")
        if template.end_date is not None and template.end_date < template.start_date:
            raise ValidationError("Template end date is before its start date")

    async def upsert(self, template: WeeklyTemplate, actor: Actor) -> WeeklyTemplate:
        actor.require_admin()
        self._validate(template)
        template.name = template.name.strip()
        template.weekdays = sorted(set(template.weekdays))
        template.periods = list(normalize_periods(template.periods))

        existing = await self._store.get(WeeklyTemplate, template.id)
        if existing is not None:
            template.created_by = existing.created_by
            template.created_at = existing.created_at
            template.updated_by = actor.id
            template.updated_at = utcnow()
        else:
            template.created_by = template.created_by or actor.id

        saved = await self._store.save(template)
        logger.info(
            "template_saved",
            template_id=saved.id,
            actor=actor.id,
            created=existing is None,
        )
        return saved

    async def remove(self, template_id: str, actor: Actor) -> None:
        actor.require_admin()
        await self.get(template_id)
        await self._store.remove(WeeklyTemplate, template_id)
        logger.info("template_removed", template_id=template_id, actor=actor.id)


class TemplateEngine:
    def __init__(
        self,
        store: Store,
        reservations: ReservationTransactionEngine,
        conflicts: ConflictResolutionEngine,
        calendar: Optional[PeriodCalendar] = None,
    ):
        self._store = store
        self._reservations = reservations
        self._conflicts = conflicts
        self._calendar = calendar or reservations.calendar

    async def apply(
        self,
        template: WeeklyTemplate,
        start: date,
        end: date,
        mode: ApplyMode = ApplyMode.MATERIALIZE,
        *,
        force_override: bool = False,
        dry_run: bool = False,
        plan: Optional[DryRunPlan] = None,
    ) -> BulkApplyResult:
        if start > end:
            raise ValidationError("Start date must not be after end date")
        tokens = normalize_periods(template.periods)
        result = BulkApplyResult(templates=1)
        if dry_run and plan is None:
            plan = DryRunPlan()

        for day in occurrence_dates(template, start, end):
            for token in tokens:
                try:
                    await self.apply_slot(
                        template, day, token, mode, result,
                        force_override=force_override, dry_run=dry_run, plan=plan,
                    )
                except ReservationError as exc:
                    logger.warning(
                        "template_unit_failed",
                        template_id=template.id,
                        date=day.isoformat(),
                        period=token,
                        error=str(exc),
                    )
                    result.errors.append(f"{template.name} {day.isoformat()} {token}: {exc}")

        logger.info(
            "template_applied",
            template_id=template.id,
            mode=ApplyMode(mode).value,
            dry_run=dry_run,
            applied=result.applied,
            overridden=result.overridden,
            relocated=result.relocated,
            skipped=result.skipped,
            unchanged=result.unchanged,
            errors=len(result.errors),
        )
        return result

    async def apply_slot(
        self,
        template: WeeklyTemplate,
        day: date,
        token: str,
        mode: ApplyMode,
        result: BulkApplyResult,
        *,
        force_override: bool = False,
        dry_run: bool = False,
        plan: Optional[DryRunPlan] = None,
    ) -> None:
        if dry_run and plan is None:
            plan = DryRunPlan()
        state = await self._reservations.occupancy(template.room_id, day, token)
        if plan is not None:
            state = plan.overlay(state)

        if state.is_reserved:
            occupant = state.reservation
            if occupant.template_id == template.id:
                result.unchanged += 1
                return
            conflict = await self._conflicts.resolve(
                template, occupant, day, token,
                force_override=force_override, dry_run=dry_run,
                taken=plan.cells if plan is not None else (),
            )
            result.conflicts.append(conflict)
            if conflict.action == ConflictAction.SKIPPED:
                result.skipped += 1
                return
            if plan is not None:
                self._plan_eviction(plan, occupant, conflict)
            if conflict.action == ConflictAction.RELOCATED:
                result.relocated += 1
            else:
                result.overridden += 1

        elif state.is_lock:
            if state.slot.template_id != template.id:
                result.skipped += 1
                return
            if mode == ApplyMode.LOCK:
                result.unchanged += 1
                return

        if dry_run:
            await self._plan_claim(plan, template, day, token, mode)
        else:
            await self._claim(template, day, token, mode)
        result.applied += 1

    def _plan_eviction(self, plan: DryRunPlan, occupant: Reservation, conflict: ConflictInfo) -> None:
        plan.vacated.add(occupant.id)
        if conflict.action == ConflictAction.RELOCATED:
            moved = Reservation(
                **{
                    **occupant.model_dump(),
                    "room_id": conflict.new_location.room_id,
                    "room_name": conflict.new_location.room_name,
                }
            )
            plan.occupy(moved, self._reservations.slots_for(moved))

    async def _plan_claim(
        self, plan: DryRunPlan, template: WeeklyTemplate, day: date, token: str, mode: ApplyMode
    ) -> None:
        key = slot_key(template.room_id, day, token)
        if mode == ApplyMode.LOCK:
            plan.lock(
                Slot(
                    key=key,
                    room_id=template.room_id,
                    booking_date=day,
                    period=token,
                    kind=SlotKind.TEMPLATE_LOCK,
                    template_id=template.id,
                    created_by=template.created_by,
                )
            )
            return

        window = self._calendar.window(day, token)
        planned = Reservation(
            room_id=template.room_id,
            room_name=await self._reservations.room_name(template.room_id),
            title=template.name,
            owner_name=template.owner_name or DEFAULT_OWNER_NAME,
            booking_date=day,
            start_time=window.start,
            end_time=window.end,
            period=token,
            period_label=display_label(token),
            created_by=template.created_by,
            template_id=template.id,
        )
        plan.occupy(planned, self._reservations.slots_for(planned))

    async def _claim(self, template: WeeklyTemplate, day: date, token: str, mode: ApplyMode) -> None:
        if mode == ApplyMode.LOCK:
            await self._reservations.place_lock(template, day, token)
            return

        window = self._calendar.window(day, token)
        await self._reservations.create(
            ReservationDraft(
                room_id=template.room_id,
                title=template.name,
                owner_name=template.owner_name or DEFAULT_OWNER_NAME,
                start=window.start,
                end=window.end,
                periods=token,
                created_by=template.created_by,
                template_id=template.id,
            )
        )

    async def cleanup(
        self,
        template_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        locks: bool = True,
        reservations: bool = True,
    ) -> CleanupResult:
        """Remove what a template left behind: lock slots and/or its reservations."""
        result = CleanupResult()
        date_range = (start, end)

        if locks:
            slots = await self._store.query(
                Slot, date_range=date_range, template_id=template_id, kind=SlotKind.TEMPLATE_LOCK
            )
            for slot in slots:
                if await self._reservations.release_lock(slot.key, template_id):
                    result.locks_removed += 1

        if reservations:
            materialized = await self._store.query(
                Reservation, date_range=date_range, template_id=template_id
            )
            for reservation in materialized:
                await self._reservations.delete_known(reservation)
                result.reservations_removed += 1

        logger.info(
            "template_cleanup",
            template_id=template_id,
            locks_removed=result.locks_removed,
            reservations_removed=result.reservations_removed,
        )
        return result
