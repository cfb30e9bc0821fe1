"""Collaborators the core consumes but does not own.

Identity and role resolution, the room directory and the audit trail live
outside the slot engine; the core only sees these small interfaces.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol

from errors import PermissionDeniedError
from log import get_logger
from models import Room

if TYPE_CHECKING:
    from schemas import ConflictInfo
    from storage import Store

logger = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """A caller whose roles were resolved before reaching the core."""

    id: str
    is_admin: bool = False
    is_super_admin: bool = False

    def require_admin(self) -> None:
        if not (self.is_admin or self.is_super_admin):
            raise PermissionDeniedError(f"Actor {self.id} is not an administrator")

    def require_super_admin(self) -> None:
        if not self.is_super_admin:
            raise PermissionDeniedError(f"Actor {self.id} is not a super administrator")


class AuthorizationPort(Protocol):
    def is_admin(self, actor_id: str) -> bool:
        ...

    def is_super_admin(self, actor_id: str) -> bool:
        ...


class StaticAuthorization:
    """Allowlist-based roles, typically fed from ADMIN_ACTORS / SUPER_ADMIN_ACTORS."""

    def __init__(self, admins: Iterable[str] = (), super_admins: Iterable[str] = ()):
        self.super_admins = frozenset(super_admins)
        self.admins = frozenset(admins) | self.super_admins

    def is_admin(self, actor_id: str) -> bool:
        return actor_id in self.admins

    def is_super_admin(self, actor_id: str) -> bool:
        return actor_id in self.super_admins


def resolve_actor(authorization: AuthorizationPort, actor_id: str) -> Actor:
    return Actor(
        id=actor_id,
        is_admin=authorization.is_admin(actor_id),
        is_super_admin=authorization.is_super_admin(actor_id),
    )


class RoomDirectory(Protocol):
    async def list_rooms(self) -> List[Room]:
        ...

    async def room_name(self, room_id: str) -> str:
        ...


class StoreRoomDirectory:
    """Rooms read from the store's rooms table."""

    def __init__(self, store: "Store"):
        self._store = store

    async def list_rooms(self) -> List[Room]:
        return await self._store.query(Room)

    async def room_name(self, room_id: str) -> str:
        room: Optional[Room] = await self._store.get(Room, room_id)
        return room.name if room is not None else room_id


class AuditSink(Protocol):
    def record(self, conflict: "ConflictInfo") -> None:
        ...


class LoggingAuditSink:
    def record(self, conflict: "ConflictInfo") -> None:
        logger.warning(
            "template_conflict",
            date=conflict.date.isoformat(),
            room_id=conflict.room_id,
            period=conflict.period,
            action=conflict.action.value,
            template=conflict.template.name,
            reservation_id=conflict.existing.id,
        )


class MemoryAuditSink:
    """Keeps recorded conflicts in a list."""

    def __init__(self):
        self.records: List["ConflictInfo"] = []

    def record(self, conflict: "ConflictInfo") -> None:
        self.records.append(conflict)
