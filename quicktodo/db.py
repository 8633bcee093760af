from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import asyncio
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from .config import DATABASE_URL
from .models import Task

logger = logging.getLogger(__name__)

# Columns a caller may sort the full listing by.
ORDERABLE_FIELDS = {
    'sort_order': Task.sort_order,
    'created_at': Task.created_at,
    'updated_at': Task.updated_at,
    'scheduled_date': Task.scheduled_date,
    'title': Task.title,
}


def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    # NullPool: every session gets a fresh aiosqlite connection, which keeps
    # sqlite file locks short and avoids pool finalizer noise at shutdown.
    return create_async_engine(url, echo=False, future=True, poolclass=NullPool)


class TaskRepository:
    """The four keyed-store operations, bound to one open session.

    Instances only exist inside TaskStore.writing() / reading().
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, task_id: uuid.UUID) -> Optional[Task]:
        return await self.session.get(Task, task_id)

    async def upsert(self, task: Task) -> Task:
        merged = await self.session.merge(task)
        await self.session.flush()
        return merged

    async def delete(self, task: Task) -> None:
        existing = await self.session.get(Task, task.id)
        if existing is not None:
            await self.session.delete(existing)
            await self.session.flush()

    async def all(self, order_by: str = 'sort_order', descending: bool = False) -> list[Task]:
        try:
            column = ORDERABLE_FIELDS[order_by]
        except KeyError:
            raise ValueError(f'cannot order tasks by {order_by!r}') from None
        q = select(Task).order_by(column.desc() if descending else column.asc())
        res = await self.session.exec(q)
        return list(res.all())


class TaskStore:
    """Local task store.

    Every mutation (user edits and sync merges alike) goes through
    `writing()`, which holds the store's single asyncio.Lock for the whole
    transaction so a merge can never interleave with a local edit.
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.engine = engine or make_engine(url or DATABASE_URL)
        self.session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def writing(self) -> AsyncIterator[TaskRepository]:
        async with self.lock:
            async with self.session_factory() as sess:
                try:
                    yield TaskRepository(sess)
                    await sess.commit()
                except SQLAlchemyError:
                    logger.exception('task store transaction failed; rolling back')
                    await sess.rollback()
                    raise
                except BaseException:
                    await sess.rollback()
                    raise

    @asynccontextmanager
    async def reading(self) -> AsyncIterator[TaskRepository]:
        async with self.session_factory() as sess:
            yield TaskRepository(sess)

    # convenience wrappers for single-shot reads

    async def get(self, task_id: uuid.UUID) -> Optional[Task]:
        async with self.reading() as repo:
            return await repo.get(task_id)

    async def all(self, order_by: str = 'sort_order', descending: bool = False) -> list[Task]:
        async with self.reading() as repo:
            return await repo.all(order_by, descending)
