from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..errors import NotFoundError

ModelT = TypeVar("ModelT", bound=SQLModel)

_active_session: ContextVar[Optional[AsyncSession]] = ContextVar(
    "ledgerflow_active_session", default=None
)


class EntityStore:
    """Async SQLModel store shared by steps that touch domain entities."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[AsyncSession]:
        """Group repository calls into one commit; rolls back if the block raises."""
        current = _active_session.get()
        if current is not None:
            yield current
            return
        async with self.session() as session:
            token = _active_session.set(session)
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
            finally:
                _active_session.reset(token)

    def repository(self, model: Type[ModelT]) -> "EntityRepository[ModelT]":
        return EntityRepository(self, model)


class EntityRepository(Generic[ModelT]):
    """CRUD access to one SQLModel table.

    Calls join the surrounding :meth:`EntityStore.unit_of_work` when one is
    active, otherwise each call commits on its own.
    """

    def __init__(self, store: EntityStore, model: Type[ModelT]) -> None:
        self.store = store
        self.model = model

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.store.unit_of_work() as session:
            yield session

    def _filtered(self, statement: Any, filters: Dict[str, Any]) -> Any:
        for name, value in filters.items():
            column = getattr(self.model, name, None)
            if column is None:
                raise ValueError(f"{self.model.__name__} has no field '{name}'")
            if isinstance(value, (list, tuple, set)):
                statement = statement.where(column.in_(list(value)))
            else:
                statement = statement.where(column == value)
        return statement

    async def get(self, id: Any) -> ModelT:
        async with self._session() as session:
            entity = await session.get(self.model, id)
        if entity is None:
            raise NotFoundError(f"{self.model.__name__} with id {id} was not found")
        return entity

    async def find(
        self,
        filters: Optional[Dict[str, Any]] = None,
        *,
        skip: int = 0,
        take: Optional[int] = None,
    ) -> List[ModelT]:
        statement = self._filtered(select(self.model), filters or {}).offset(skip)
        if take is not None:
            statement = statement.limit(take)
        async with self._session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def find_and_count(
        self,
        filters: Optional[Dict[str, Any]] = None,
        *,
        skip: int = 0,
        take: Optional[int] = None,
    ) -> Tuple[List[ModelT], int]:
        entities = await self.find(filters, skip=skip, take=take)
        statement = self._filtered(
            select(func.count()).select_from(self.model), filters or {}
        )
        async with self._session() as session:
            count = (await session.execute(statement)).scalar_one()
        return entities, count

    async def create(self, data: Dict[str, Any] | ModelT) -> ModelT:
        entity = data if isinstance(data, self.model) else self.model(**data)
        async with self._session() as session:
            session.add(entity)
            await session.flush()
            await session.refresh(entity)
        return entity

    async def update(self, id: Any, data: Dict[str, Any]) -> ModelT:
        async with self._session() as session:
            entity = await session.get(self.model, id)
            if entity is None:
                raise NotFoundError(f"{self.model.__name__} with id {id} was not found")
            for name, value in data.items():
                setattr(entity, name, value)
            session.add(entity)
            await session.flush()
            await session.refresh(entity)
        return entity

    async def delete(self, id: Any) -> ModelT:
        """Remove an entity and return it so callers can restore it later."""
        async with self._session() as session:
            entity = await session.get(self.model, id)
            if entity is None:
                raise NotFoundError(f"{self.model.__name__} with id {id} was not found")
            snapshot = self.model.model_validate(entity.model_dump())
            await session.delete(entity)
            await session.flush()
        return snapshot
