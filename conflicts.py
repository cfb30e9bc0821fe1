"""Priority-based resolution when a template slot is held by someone else.

critical  -> the occupant is deleted
high      -> the occupant is moved to a free room, or deleted if none is free
normal    -> the occupant stays and the template slot is skipped
"""

from datetime import date
from typing import Container, Optional

from errors import SlotOccupiedError
from log import get_logger
from models import Priority, Reservation, WeeklyTemplate
from periods import display_label
from ports import AuditSink, LoggingAuditSink, RoomDirectory
from reservations import ReservationTransactionEngine
from schemas import ConflictAction, ConflictInfo, Relocation, ReservationSummary, TemplateSummary
from slots import slot_key

logger = get_logger(__name__)


class ConflictResolutionEngine:
    def __init__(
        self,
        reservations: ReservationTransactionEngine,
        rooms: RoomDirectory,
        audit: Optional[AuditSink] = None,
    ):
        self._reservations = reservations
        self._rooms = rooms
        self._audit = audit or LoggingAuditSink()

    async def find_alternative(
        self, occupant: Reservation, exclude_room_id: str, taken: Container[str] = ()
    ) -> Optional[Relocation]:
        """First other room where every period of the occupant is free.

        taken holds slot keys already promised to someone else in the current run.
        """
        tokens = occupant.tokens
        for room in await self._rooms.list_rooms():
            if room.id in (exclude_room_id, occupant.room_id):
                continue
            if any(slot_key(room.id, occupant.booking_date, token) in taken for token in tokens):
                continue
            if await self._reservations.is_free(room.id, occupant.booking_date, tokens):
                return Relocation(room_id=room.id, room_name=room.name, period=occupant.period)
        return None

    async def resolve(
        self,
        template: WeeklyTemplate,
        occupant: Reservation,
        booking_date: date,
        period: str,
        *,
        force_override: bool = False,
        dry_run: bool = False,
        taken: Container[str] = (),
    ) -> ConflictInfo:
        priority = Priority.CRITICAL if force_override else template.priority
        new_location = None

        if priority == Priority.CRITICAL:
            action = ConflictAction.OVERRIDDEN
        elif priority == Priority.HIGH:
            new_location = await self.find_alternative(occupant, template.room_id, taken)
            action = ConflictAction.RELOCATED if new_location else ConflictAction.OVERRIDDEN
        else:
            action = ConflictAction.SKIPPED

        if not dry_run:
            if action == ConflictAction.RELOCATED:
                try:
                    await self._reservations.move(
                        occupant.id, new_location.room_id, new_room_name=new_location.room_name
                    )
                except SlotOccupiedError:
                    logger.warning(
                        "relocation_lost_race",
                        reservation_id=occupant.id,
                        target_room=new_location.room_id,
                    )
                    action = ConflictAction.OVERRIDDEN
                    new_location = None
            if action == ConflictAction.OVERRIDDEN:
                await self._reservations.delete_known(occupant)

        conflict = ConflictInfo(
            date=booking_date,
            room_id=template.room_id,
            room_name=occupant.room_name,
            period=period,
            period_label=display_label(period),
            existing=ReservationSummary.of(occupant),
            template=TemplateSummary.of(template),
            action=action,
            new_location=new_location,
        )
        if not dry_run:
            self._audit.record(conflict)
        logger.info(
            "conflict_resolved",
            template_id=template.id,
            reservation_id=occupant.id,
            action=action.value,
            dry_run=dry_run,
        )
        return conflict
