"""Atomic create / delete / move of reservations and their slot records.

A reservation owns one slot per period token, keyed by (room, date, period).
Every operation that touches slots runs in a single store transaction, so a
slot and the reservation it points to appear and disappear together.

Stale slots are healed on the way: a template lock never blocks a real
booking, and a slot whose reservation no longer exists is an orphan left by
an earlier partial failure. Both are deleted inside the claiming transaction.
"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

import config
from errors import NotFoundError, PermissionDeniedError, SlotOccupiedError, ValidationError
from errors import TransientStorageError
from log import get_logger
from models import Reservation, Slot, SlotKind, WeeklyTemplate, utcnow
from periods import DefaultPeriodCalendar, PeriodCalendar, canonical_expression, local_date
from periods import normalize_periods, span
from ports import RoomDirectory
from schemas import ReservationDraft
from slots import slot_key
from storage import Store, Transaction

logger = get_logger(__name__)

Authorize = Callable[[Reservation], bool]


@dataclass
class SlotOccupancy:
    """What currently sits in a slot, read outside any transaction."""

    key: str
    slot: Optional[Slot] = None
    reservation: Optional[Reservation] = None

    @property
    def is_lock(self) -> bool:
        return self.slot is not None and self.slot.kind == SlotKind.TEMPLATE_LOCK

    @property
    def is_reserved(self) -> bool:
        return self.reservation is not None

    @property
    def is_free(self) -> bool:
        # Orphans count as free: the next claim removes them
        return not self.is_lock and not self.is_reserved


class ReservationTransactionEngine:
    def __init__(
        self,
        store: Store,
        calendar: Optional[PeriodCalendar] = None,
        rooms: Optional[RoomDirectory] = None,
        *,
        delete_attempts: Optional[int] = None,
        delete_backoff: Optional[float] = None,
    ):
        self._store = store
        self._calendar = calendar or DefaultPeriodCalendar()
        self._rooms = rooms
        self._delete_attempts = delete_attempts or config.DELETE_MAX_ATTEMPTS
        self._delete_backoff = config.DELETE_BACKOFF_SECONDS if delete_backoff is None else delete_backoff

    @property
    def calendar(self) -> PeriodCalendar:
        return self._calendar

    async def _live_occupant(
        self, tx: Transaction, room_id: str, booking_date: date, period: str
    ) -> Optional[Reservation]:
        """Return the live reservation holding the slot, clearing locks and orphans."""
        key = slot_key(room_id, booking_date, period)
        slot = await tx.get(Slot, key)
        if slot is None:
            return None

        if slot.kind == SlotKind.TEMPLATE_LOCK:
            await tx.delete(Slot, key)
            logger.info("template_lock_superseded", key=key, template_id=slot.template_id)
            return None

        if slot.reservation_id:
            occupant = await tx.get(Reservation, slot.reservation_id)
            if occupant is not None:
                return occupant

        await tx.delete(Slot, key)
        logger.warning("orphan_slot_removed", key=key, reservation_id=slot.reservation_id)
        return None

    def slots_for(self, reservation: Reservation) -> List[Slot]:
        return [
            Slot(
                key=slot_key(reservation.room_id, reservation.booking_date, token),
                room_id=reservation.room_id,
                booking_date=reservation.booking_date,
                period=token,
                kind=SlotKind.RESERVATION,
                reservation_id=reservation.id,
                template_id=reservation.template_id,
                created_by=reservation.created_by,
            )
            for token in reservation.tokens
        ]

    async def room_name(self, room_id: str) -> str:
        if self._rooms is None:
            return room_id
        return await self._rooms.room_name(room_id)

    async def create(self, draft: ReservationDraft) -> str:
        """Book every period of the draft or nothing; return the new reservation id."""
        if not draft.room_id or not draft.title.strip() or not draft.created_by:
            raise ValidationError("Room, title and creator are required")
        if draft.start >= draft.end:
            raise ValidationError("Reservation must end after it starts")

        tokens = normalize_periods(draft.periods)
        booking_date = local_date(draft.start)
        for token in tokens:
            slot_key(draft.room_id, booking_date, token)

        reservation = Reservation(
            room_id=draft.room_id,
            room_name=draft.room_name or await self.room_name(draft.room_id),
            title=draft.title.strip(),
            owner_name=draft.owner_name,
            booking_date=booking_date,
            start_time=draft.start,
            end_time=draft.end,
            period=canonical_expression(tokens),
            period_label=span(self._calendar, booking_date, tokens).label,
            created_by=draft.created_by,
            template_id=draft.template_id,
        )

        async def _create(tx: Transaction) -> Reservation:
            for token in tokens:
                occupant = await self._live_occupant(tx, draft.room_id, booking_date, token)
                if occupant is not None:
                    raise SlotOccupiedError(draft.room_id, booking_date, token, occupant.id)

            await tx.set(reservation)
            for slot in self.slots_for(reservation):
                await tx.set(slot)
            return reservation

        try:
            created = await self._store.run_transaction(_create)
        except SlotOccupiedError as exc:
            logger.info(
                "reservation_rejected",
                room_id=exc.room_id,
                date=exc.booking_date.isoformat(),
                period=exc.period,
                blocking_reservation=exc.reservation_id,
            )
            raise

        logger.info(
            "reservation_created",
            reservation_id=created.id,
            room_id=created.room_id,
            date=booking_date.isoformat(),
            period=created.period,
            template_id=created.template_id,
        )
        return created.id

    async def _remove(self, tx: Transaction, reservation: Reservation) -> None:
        for token in reservation.tokens:
            key = slot_key(reservation.room_id, reservation.booking_date, token)
            slot = await tx.get(Slot, key)
            if slot is not None and slot.reservation_id == reservation.id:
                await tx.delete(Slot, key)
        await tx.delete(Reservation, reservation.id)

    async def _with_delete_retry(self, fn):
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientStorageError),
            stop=stop_after_attempt(self._delete_attempts),
            wait=wait_exponential(multiplier=self._delete_backoff),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("delete_retry", attempt=attempt.retry_state.attempt_number)
                return await self._store.run_transaction(fn)

    async def delete(self, reservation_id: str, authorize: Optional[Authorize] = None) -> Reservation:
        """Delete a reservation and all of its slots.

        authorize is the caller's decision on the fetched reservation; the core
        only enforces it.
        """

        async def _delete(tx: Transaction) -> Reservation:
            reservation = await tx.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found")
            if authorize is not None and not authorize(reservation):
                raise PermissionDeniedError(f"Not allowed to delete reservation {reservation_id}")
            await self._remove(tx, reservation)
            return reservation

        deleted = await self._with_delete_retry(_delete)
        logger.info("reservation_deleted", reservation_id=reservation_id, room_id=deleted.room_id)
        return deleted

    async def delete_known(self, reservation: Reservation) -> None:
        """Delete using a snapshot the caller already holds, skipping the reservation read."""

        async def _delete(tx: Transaction) -> None:
            await self._remove(tx, reservation)

        await self._with_delete_retry(_delete)
        logger.info("reservation_deleted", reservation_id=reservation.id, room_id=reservation.room_id)

    async def delete_many(self, start: date, end: date, room_id: Optional[str] = None) -> int:
        if start > end:
            raise ValidationError("Start date must not be after end date")
        filters = {"room_id": room_id} if room_id else {}
        reservations = await self._store.query(Reservation, date_range=(start, end), **filters)
        for reservation in reservations:
            await self.delete_known(reservation)
        logger.info("reservations_purged", count=len(reservations), start=start.isoformat(), end=end.isoformat())
        return len(reservations)

    async def move(
        self,
        reservation_id: str,
        new_room_id: str,
        new_periods=None,
        new_room_name: Optional[str] = None,
    ) -> Reservation:
        """Move a reservation to another room and/or periods on the same date.

        Fails with SlotOccupiedError, leaving the old slots untouched, when any
        target cell holds another live reservation.
        """
        room_name = new_room_name or await self.room_name(new_room_id)
        requested = normalize_periods(new_periods) if new_periods is not None else None

        async def _move(tx: Transaction) -> Reservation:
            reservation = await tx.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFoundError(f"Reservation {reservation_id} not found")

            old_tokens = reservation.tokens
            tokens = requested or old_tokens
            booking_date = reservation.booking_date
            own_keys = {slot_key(reservation.room_id, booking_date, token) for token in old_tokens}

            for token in tokens:
                if slot_key(new_room_id, booking_date, token) in own_keys:
                    continue
                occupant = await self._live_occupant(tx, new_room_id, booking_date, token)
                if occupant is not None and occupant.id != reservation.id:
                    raise SlotOccupiedError(new_room_id, booking_date, token, occupant.id)

            for token in old_tokens:
                key = slot_key(reservation.room_id, booking_date, token)
                slot = await tx.get(Slot, key)
                if slot is not None and slot.reservation_id == reservation.id:
                    await tx.delete(Slot, key)

            window = span(self._calendar, booking_date, tokens)
            reservation.room_id = new_room_id
            reservation.room_name = room_name
            reservation.period = canonical_expression(tokens)
            reservation.period_label = window.label
            reservation.start_time = window.start
            reservation.end_time = window.end
            await tx.set(reservation)
            for slot in self.slots_for(reservation):
                await tx.set(slot)
            return reservation

        moved = await self._store.run_transaction(_move)
        logger.info(
            "reservation_moved",
            reservation_id=reservation_id,
            room_id=new_room_id,
            period=moved.period,
        )
        return moved

    async def place_lock(self, template: WeeklyTemplate, booking_date: date, period: str) -> bool:
        """Put a template-lock placeholder in a slot.

        Returns False when the template already holds the lock. A foreign lock
        or a live reservation raises SlotOccupiedError.
        """
        key = slot_key(template.room_id, booking_date, period)

        async def _lock(tx: Transaction) -> bool:
            slot = await tx.get(Slot, key)
            if slot is not None and slot.kind == SlotKind.TEMPLATE_LOCK:
                if slot.template_id == template.id:
                    return False
                raise SlotOccupiedError(template.room_id, booking_date, period)
            if slot is not None:
                occupant = await self._live_occupant(tx, template.room_id, booking_date, period)
                if occupant is not None:
                    raise SlotOccupiedError(template.room_id, booking_date, period, occupant.id)
            await tx.set(
                Slot(
                    key=key,
                    room_id=template.room_id,
                    booking_date=booking_date,
                    period=period,
                    kind=SlotKind.TEMPLATE_LOCK,
                    template_id=template.id,
                    created_by=template.created_by,
                    created_at=utcnow(),
                )
            )
            return True

        placed = await self._store.run_transaction(_lock)
        if placed:
            logger.debug("template_lock_placed", key=key, template_id=template.id)
        return placed

    async def release_lock(self, key: str, template_id: str) -> bool:
        async def _release(tx: Transaction) -> bool:
            slot = await tx.get(Slot, key)
            if slot is None or slot.kind != SlotKind.TEMPLATE_LOCK or slot.template_id != template_id:
                return False
            await tx.delete(Slot, key)
            return True

        return await self._store.run_transaction(_release)

    async def occupancy(self, room_id: str, booking_date: date, period: str) -> SlotOccupancy:
        key = slot_key(room_id, booking_date, period)
        slot = await self._store.get(Slot, key)
        state = SlotOccupancy(key=key, slot=slot)
        if slot is not None and slot.kind == SlotKind.RESERVATION and slot.reservation_id:
            state.reservation = await self._store.get(Reservation, slot.reservation_id)
        return state

    async def is_free(self, room_id: str, booking_date: date, tokens: Tuple[str, ...]) -> bool:
        for token in tokens:
            state = await self.occupancy(room_id, booking_date, token)
            if not state.is_free:
                return False
        return True

    async def get(self, reservation_id: str) -> Reservation:
        reservation = await self._store.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    async def list(self, start: date, end: date, room_id: Optional[str] = None) -> List[Reservation]:
        filters = {"room_id": room_id} if room_id else {}
        reservations = await self._store.query(Reservation, date_range=(start, end), **filters)
        return sorted(reservations, key=lambda r: (r.start_time, r.room_id))
