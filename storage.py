"""Storage-agnostic transactions over the reservation tables.

A Store runs a coroutine function inside a Transaction and retries it when
the commit finds that something it read was changed by a concurrent commit.
Writes are buffered in the transaction and applied at commit, so an aborted
attempt leaves nothing behind.

MemoryStore validates per-key versions at commit (optimistic, snapshot
reads). SqlStore relies on the slot primary key: a concurrent insert of the
same key fails the commit with an IntegrityError, which is retried the same
way.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select

import config
from database import init_db
from errors import StorageError, TransientStorageError
from log import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=SQLModel)
R = TypeVar("R")

DateRange = Tuple[Optional[date], Optional[date]]

# Serialization failure and deadlock, reported by PostgreSQL drivers
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

_MISSING = object()


class TransactionConflict(Exception):
    """The read set of a transaction was invalidated before it committed."""


def primary_key(model: Type[SQLModel]) -> str:
    return next(iter(model.__table__.primary_key.columns)).name


def identity(obj: SQLModel) -> Any:
    return getattr(obj, primary_key(type(obj)))


class Transaction(ABC):
    @abstractmethod
    async def get(self, model: Type[T], key: Any) -> Optional[T]:
        """Read a row, seeing this transaction's own pending writes."""

    @abstractmethod
    async def set(self, obj: SQLModel) -> None:
        """Insert or replace a row at commit."""

    @abstractmethod
    async def delete(self, model: Type[SQLModel], key: Any) -> None:
        """Remove a row at commit; missing rows are ignored."""

    @abstractmethod
    async def commit(self) -> None:
        """Apply buffered writes or raise TransactionConflict."""

    async def close(self) -> None:
        pass


class Store(ABC):
    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or config.TRANSACTION_MAX_ATTEMPTS

    async def init(self) -> None:
        pass

    @abstractmethod
    async def begin(self) -> Transaction:
        ...

    @abstractmethod
    async def query(
        self,
        model: Type[T],
        *,
        date_range: Optional[DateRange] = None,
        **equals: Any,
    ) -> List[T]:
        """Rows matching all equality filters, ordered by primary key.

        date_range filters booking_date inclusively; either bound may be None.
        """

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        for attempt in range(1, self.max_attempts + 1):
            tx = await self.begin()
            try:
                result = await fn(tx)
                await tx.commit()
            except TransactionConflict as exc:
                logger.info("transaction_conflict", attempt=attempt, detail=str(exc))
                continue
            finally:
                await tx.close()
            return result
        raise TransientStorageError(f"Transaction aborted after {self.max_attempts} attempts")

    async def get(self, model: Type[T], key: Any) -> Optional[T]:
        return await self.run_transaction(lambda tx: tx.get(model, key))

    async def save(self, obj: T) -> T:
        async def _save(tx: Transaction) -> T:
            await tx.set(obj)
            return obj

        return await self.run_transaction(_save)

    async def remove(self, model: Type[SQLModel], key: Any) -> None:
        await self.run_transaction(lambda tx: tx.delete(model, key))


class MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._reads: Dict[Tuple[str, Any], int] = {}
        self._writes: Dict[Tuple[str, Any], Optional[dict]] = {}

    async def get(self, model, key):
        row_id = (model.__tablename__, key)
        if row_id in self._writes:
            data = self._writes[row_id]
        else:
            version = self._store._versions.get(row_id, 0)
            self._reads.setdefault(row_id, version)
            data = self._store._rows.get(row_id)
            # Storage round-trip; other transactions may commit meanwhile
            await asyncio.sleep(0)
        return model(**copy.deepcopy(data)) if data is not None else None

    async def set(self, obj):
        self._writes[(obj.__tablename__, identity(obj))] = obj.model_dump()

    async def delete(self, model, key):
        self._writes[(model.__tablename__, key)] = None

    async def commit(self):
        async with self._store._commit_lock:
            for row_id, version in self._reads.items():
                if self._store._versions.get(row_id, 0) != version:
                    raise TransactionConflict(f"{row_id[0]}:{row_id[1]}")
            for row_id, data in self._writes.items():
                if data is None:
                    self._store._rows.pop(row_id, None)
                else:
                    self._store._rows[row_id] = data
                self._store._versions[row_id] = self._store._versions.get(row_id, 0) + 1


class MemoryStore(Store):
    """In-process store for tests and single-process deployments."""

    def __init__(self, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        self._rows: Dict[Tuple[str, Any], dict] = {}
        self._versions: Dict[Tuple[str, Any], int] = {}
        self._commit_lock = asyncio.Lock()

    async def begin(self) -> Transaction:
        return MemoryTransaction(self)

    async def query(self, model, *, date_range=None, **equals):
        pk = primary_key(model)
        matches = []
        for (table, _), data in self._rows.items():
            if table != model.__tablename__:
                continue
            if any(data.get(name) != value for name, value in equals.items()):
                continue
            if date_range is not None and not _in_range(data.get("booking_date"), date_range):
                continue
            matches.append(data)
        matches.sort(key=lambda data: data[pk])
        return [model(**copy.deepcopy(data)) for data in matches]


def _in_range(day: Optional[date], date_range: DateRange) -> bool:
    start, end = date_range
    if day is None:
        return False
    if start is not None and day < start:
        return False
    return end is None or day <= end


class SqlTransaction(Transaction):
    def __init__(self, session: AsyncSession):
        self._session = session
        self._writes: Dict[Tuple[Type[SQLModel], Any], Optional[SQLModel]] = {}
        # Keys this transaction saw missing; writing them must INSERT
        self._absent: Set[Tuple[Type[SQLModel], Any]] = set()

    async def get(self, model, key):
        pending = self._writes.get((model, key), _MISSING)
        if pending is not _MISSING:
            return pending
        try:
            row = await self._session.get(model, key, with_for_update=True)
        except SQLAlchemyError as exc:
            raise _storage_error(exc) from exc
        if row is None:
            self._absent.add((model, key))
        return row

    async def set(self, obj):
        self._writes[(type(obj), identity(obj))] = obj

    async def delete(self, model, key):
        self._writes[(model, key)] = None

    async def commit(self):
        try:
            for (model, key), obj in self._writes.items():
                if obj is None:
                    row = await self._session.get(model, key)
                    if row is not None:
                        await self._session.delete(row)
                elif (model, key) in self._absent:
                    # A concurrent insert of the same key fails with IntegrityError
                    self._session.add(obj)
                else:
                    await self._session.merge(obj)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise TransactionConflict(str(exc.orig)) from exc
        except DBAPIError as exc:
            await self._session.rollback()
            if getattr(exc.orig, "sqlstate", None) in _RETRYABLE_SQLSTATES:
                raise TransactionConflict(str(exc.orig)) from exc
            raise _storage_error(exc) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise _storage_error(exc) from exc

    async def close(self):
        await self._session.close()


def _storage_error(exc: SQLAlchemyError) -> StorageError:
    if isinstance(exc, OperationalError):
        return TransientStorageError(str(exc))
    return StorageError(str(exc))


class SqlStore(Store):
    """Store backed by SQLModel tables through an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine, max_attempts: Optional[int] = None):
        super().__init__(max_attempts)
        self.engine = engine
        self._sessionmaker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def init(self) -> None:
        await init_db(self.engine)

    async def begin(self) -> Transaction:
        return SqlTransaction(self._sessionmaker())

    async def query(self, model, *, date_range=None, **equals):
        statement = select(model)
        for name, value in equals.items():
            statement = statement.where(getattr(model, name) == value)
        if date_range is not None:
            start, end = date_range
            if start is not None:
                statement = statement.where(model.booking_date >= start)
            if end is not None:
                statement = statement.where(model.booking_date <= end)
        statement = statement.order_by(getattr(model, primary_key(model)))
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(statement)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise _storage_error(exc) from exc
