from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from bulk import BulkApplicationOrchestrator
from conflicts import ConflictResolutionEngine
from database import create_engine
from errors import (
    NotFoundError,
    PermissionDeniedError,
    ReservationError,
    SlotOccupiedError,
    StorageError,
    TransientStorageError,
    ValidationError,
)
from log import get_logger, setup_logging
from models import Category, Priority, Reservation, Room, Slot, SlotKind, WeeklyTemplate
from periods import PERIOD_ORDER, DefaultPeriodCalendar, display_label, normalize_periods, span
from ports import (
    Actor,
    AuthorizationPort,
    LoggingAuditSink,
    StaticAuthorization,
    StoreRoomDirectory,
    resolve_actor,
)
from reservations import ReservationTransactionEngine
from schemas import ApplyMode, BulkApplyOptions, BulkApplyResult, CleanupResult, ReservationDraft
from semesters import Semester
from slots import slot_key
from storage import MemoryStore, SqlStore, Store
from weekly_templates import TemplateEngine, TemplateService

logger = get_logger(__name__)

# Most specific classes first
ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SlotOccupiedError, status.HTTP_409_CONFLICT),
    (TransientStorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@dataclass
class Services:
    store: Store
    authorization: AuthorizationPort
    rooms: StoreRoomDirectory
    calendar: DefaultPeriodCalendar
    reservations: ReservationTransactionEngine
    templates: TemplateService
    template_engine: TemplateEngine
    bulk: BulkApplicationOrchestrator


def build_services(store: Store, authorization: AuthorizationPort) -> Services:
    calendar = DefaultPeriodCalendar()
    rooms = StoreRoomDirectory(store)
    reservations = ReservationTransactionEngine(store, calendar, rooms)
    conflicts = ConflictResolutionEngine(reservations, rooms, LoggingAuditSink())
    templates = TemplateService(store)
    template_engine = TemplateEngine(store, reservations, conflicts, calendar)
    return Services(
        store=store,
        authorization=authorization,
        rooms=rooms,
        calendar=calendar,
        reservations=reservations,
        templates=templates,
        template_engine=template_engine,
        bulk=BulkApplicationOrchestrator(templates, template_engine),
    )


def default_store() -> Store:
    if config.DATABASE_URL:
        return SqlStore(create_engine())
    logger.warning("database_url_missing", detail="using in-memory store")
    return MemoryStore()


# Pydantic Schemas for Request/Response
class ReservationCreate(BaseModel):
    room_id: str
    booking_date: date
    periods: Union[str, List[str]]
    title: str
    owner_name: str


class ReservationMove(BaseModel):
    room_id: str
    periods: Optional[Union[str, List[str]]] = None


class TemplateCreate(BaseModel):
    id: Optional[str] = None
    name: str
    room_id: str
    weekdays: List[int]
    periods: List[str]
    start_date: date
    end_date: Optional[date] = None
    priority: Priority = Priority.NORMAL
    category: Category = Category.OTHER
    enabled: bool = True
    owner_name: Optional[str] = None
    description: Optional[str] = None


class BulkApplyRequest(BaseModel):
    start_date: date
    end_date: date
    force_override: bool = False
    priority: Optional[Priority] = None
    dry_run: bool = False
    mode: ApplyMode = ApplyMode.MATERIALIZE

    def options(self) -> BulkApplyOptions:
        return BulkApplyOptions(
            dry_run=self.dry_run,
            priority=self.priority,
            force_override=self.force_override,
            mode=self.mode,
        )


class SemesterApplyRequest(BaseModel):
    academic_year: int
    semester: Semester
    force_override: bool = False
    priority: Optional[Priority] = None
    dry_run: bool = False
    mode: ApplyMode = ApplyMode.MATERIALIZE


class CleanupRequest(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    locks: bool = True
    reservations: bool = True


class SlotStatus(BaseModel):
    period: str
    time_label: str
    status: str
    title: Optional[str] = None
    reservation_id: Optional[str] = None


class RoomSchedule(BaseModel):
    room_id: str
    room_name: str
    schedule: List[SlotStatus]


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    request: Request,
    x_actor_id: Optional[str] = Header(default=None),
) -> Actor:
    if not x_actor_id:
        raise PermissionDeniedError("X-Actor-Id header is required")
    return resolve_actor(request.app.state.services.authorization, x_actor_id)


def create_app(store: Optional[Store] = None, authorization: Optional[AuthorizationPort] = None) -> FastAPI:
    services = build_services(
        store or default_store(),
        authorization or StaticAuthorization(config.ADMIN_ACTORS, config.SUPER_ADMIN_ACTORS),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(json_output=config.LOG_JSON, log_level=config.LOG_LEVEL)
        await services.store.init()
        yield

    app = FastAPI(title="Classroom Reservation System", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ReservationError)
    async def reservation_error_handler(request: Request, exc: ReservationError):
        code = next(
            (code for cls, code in ERROR_STATUS if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.get("/rooms", response_model=List[Room])
    async def list_rooms(services: Services = Depends(get_services)):
        return await services.rooms.list_rooms()

    @app.get("/dashboard-grid", response_model=List[RoomSchedule])
    async def get_dashboard_grid(target_date: date, services: Services = Depends(get_services)):
        # One query per table for the whole day
        slots = await services.store.query(Slot, date_range=(target_date, target_date))
        reservations = await services.reservations.list(target_date, target_date)
        slot_map: Dict[str, Slot] = {s.key: s for s in slots}
        titles = {r.id: r.title for r in reservations}

        dashboard_data = []
        for room in await services.rooms.list_rooms():
            room_schedule = []
            for period in PERIOD_ORDER:
                slot = slot_map.get(slot_key(room.id, target_date, period))
                entry = SlotStatus(period=period, time_label=display_label(period), status="available")
                if slot is not None and slot.kind == SlotKind.TEMPLATE_LOCK:
                    entry.status = "locked"
                elif slot is not None and slot.reservation_id in titles:
                    entry.status = "reserved"
                    entry.title = titles[slot.reservation_id]
                    entry.reservation_id = slot.reservation_id
                room_schedule.append(entry)
            dashboard_data.append(RoomSchedule(room_id=room.id, room_name=room.name, schedule=room_schedule))

        return dashboard_data

    @app.get("/reservations", response_model=List[Reservation])
    async def list_reservations(
        start_date: date,
        end_date: date,
        room_id: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        return await services.reservations.list(start_date, end_date, room_id)

    @app.get("/reservations/{reservation_id}", response_model=Reservation)
    async def get_reservation(reservation_id: str, services: Services = Depends(get_services)):
        return await services.reservations.get(reservation_id)

    @app.post("/reservations", status_code=status.HTTP_201_CREATED)
    async def create_reservation(
        body: ReservationCreate,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        tokens = normalize_periods(body.periods)
        window = span(services.calendar, body.booking_date, tokens)
        reservation_id = await services.reservations.create(
            ReservationDraft(
                room_id=body.room_id,
                title=body.title,
                owner_name=body.owner_name,
                start=window.start,
                end=window.end,
                periods=list(tokens),
                created_by=actor.id,
            )
        )
        return {"message": "Booking successful", "id": reservation_id}

    @app.delete("/reservations/{reservation_id}")
    async def delete_reservation(
        reservation_id: str,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        await services.reservations.delete(
            reservation_id,
            authorize=lambda reservation: actor.is_admin or reservation.created_by == actor.id,
        )
        return {"message": "Reservation deleted", "id": reservation_id}

    @app.delete("/reservations")
    async def purge_reservations(
        start_date: date,
        end_date: date,
        room_id: Optional[str] = None,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        actor.require_super_admin()
        deleted = await services.reservations.delete_many(start_date, end_date, room_id)
        return {"deleted": deleted}

    @app.post("/reservations/{reservation_id}/move", response_model=Reservation)
    async def move_reservation(
        reservation_id: str,
        body: ReservationMove,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        current = await services.reservations.get(reservation_id)
        if not (actor.is_admin or current.created_by == actor.id):
            raise PermissionDeniedError(f"Not allowed to move reservation {reservation_id}")
        return await services.reservations.move(reservation_id, body.room_id, body.periods)

    @app.get("/templates", response_model=List[WeeklyTemplate])
    async def list_templates(services: Services = Depends(get_services)):
        return await services.templates.list()

    @app.post("/templates", response_model=WeeklyTemplate, status_code=status.HTTP_201_CREATED)
    async def save_template(
        body: TemplateCreate,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        values = body.model_dump(exclude_none=True)
        template = WeeklyTemplate(**values, created_by=actor.id)
        return await services.templates.upsert(template, actor)

    @app.delete("/templates/{template_id}")
    async def delete_template(
        template_id: str,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        await services.templates.remove(template_id, actor)
        return {"message": "Template deleted", "id": template_id}

    @app.post("/templates/apply", response_model=BulkApplyResult)
    async def apply_templates(
        body: BulkApplyRequest,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        actor.require_admin()
        return await services.bulk.apply(body.start_date, body.end_date, body.options())

    @app.post("/templates/apply-semester", response_model=BulkApplyResult)
    async def apply_semester(
        body: SemesterApplyRequest,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        actor.require_admin()
        options = BulkApplyOptions(
            dry_run=body.dry_run,
            priority=body.priority,
            force_override=body.force_override,
            mode=body.mode,
        )
        return await services.bulk.apply_semester(body.academic_year, body.semester, options)

    @app.post("/templates/{template_id}/cleanup", response_model=CleanupResult)
    async def cleanup_template(
        template_id: str,
        body: CleanupRequest,
        actor: Actor = Depends(get_actor),
        services: Services = Depends(get_services),
    ):
        actor.require_admin()
        return await services.template_engine.cleanup(
            template_id,
            body.start_date,
            body.end_date,
            locks=body.locks,
            reservations=body.reservations,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()
