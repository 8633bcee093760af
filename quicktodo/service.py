"""Application service: the glue between parser, store, reminders and sync.

Every mutation runs inside TaskStore.writing(), and the remote push happens
before that lock is released so a concurrent merge can never swallow it.
"""
from datetime import datetime, tzinfo
from typing import Callable, Optional
import logging
import uuid

from .db import TaskStore
from .models import ParsedInput, Task
from .notifications import NotificationCenter
from .parser import NaturalLanguageParser
from .remote import RemoteError
from .sync import SyncEngine, SyncReport
from .tasks import (
    UNSET, complete_task, edit_task, reorder_tasks, task_from_parsed,
    today_tasks, toggle_task, uncomplete_task, upcoming_groups,
)
from .utils import local_tz, now_local

logger = logging.getLogger(__name__)


class TaskNotFound(LookupError):
    def __init__(self, task_id):
        super().__init__(f'task {task_id} not found')
        self.task_id = task_id


class TaskService:
    def __init__(
        self,
        store: TaskStore,
        parser: Optional[NaturalLanguageParser] = None,
        sync: Optional[SyncEngine] = None,
        notifier: Optional[NotificationCenter] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.store = store
        self.clock = clock or now_local
        self.tz = tz or local_tz()
        self.parser = parser or NaturalLanguageParser(now=self.clock, tz=self.tz)
        self.sync = sync
        self.notifier = notifier or NotificationCenter(clock=self.clock)

    def now(self) -> datetime:
        return self.clock().astimezone(self.tz)

    async def _push(self, task: Task) -> None:
        if self.sync is None:
            return
        try:
            await self.sync.push(task)
        except RemoteError as e:
            # the next full sync pushes it again while it is inside the grace window
            logger.warning('push of task %s failed: %s', task.id, e)

    async def _get(self, repo, task_id: uuid.UUID) -> Task:
        task = await repo.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def parse(self, text: str) -> ParsedInput:
        return self.parser.parse(text)

    async def add(self, text: str) -> Task:
        if not (text or '').strip():
            raise ValueError('cannot create a task from empty input')
        parsed = self.parser.parse(text)
        task = task_from_parsed(parsed, text, self.now())
        async with self.store.writing() as repo:
            task = await repo.upsert(task)
            self.notifier.schedule(task)
            await self._push(task)
        logger.info('created task %s %r', task.id, task.title)
        return task

    async def list_tasks(self, order_by: str = 'sort_order', descending: bool = True) -> list[Task]:
        return await self.store.all(order_by, descending)

    async def get(self, task_id: uuid.UUID) -> Task:
        async with self.store.reading() as repo:
            return await self._get(repo, task_id)

    async def today(self) -> list[Task]:
        return today_tasks(await self.list_tasks(), self.now())

    async def upcoming(self) -> list[tuple[str, list[Task]]]:
        tasks = await self.list_tasks('scheduled_date', descending=False)
        return upcoming_groups(tasks, self.now())

    async def _mutate(self, task_id: uuid.UUID, fn) -> Task:
        async with self.store.writing() as repo:
            task = await self._get(repo, task_id)
            fn(task)
            task = await repo.upsert(task)
            self.notifier.update(task)
            await self._push(task)
        return task

    async def toggle(self, task_id: uuid.UUID) -> Task:
        return await self._mutate(task_id, lambda t: toggle_task(t, self.now(), self.tz))

    async def complete(self, task_id: uuid.UUID) -> Task:
        return await self._mutate(task_id, lambda t: complete_task(t, self.now(), self.tz))

    async def uncomplete(self, task_id: uuid.UUID) -> Task:
        return await self._mutate(task_id, lambda t: uncomplete_task(t, self.now()))

    async def edit(
        self,
        task_id: uuid.UUID,
        title=UNSET,
        scheduled_date=UNSET,
        has_specific_time=UNSET,
        recurrence_rule=UNSET,
    ) -> Task:
        return await self._mutate(task_id, lambda t: edit_task(
            t, self.now(),
            title=title,
            scheduled_date=scheduled_date,
            has_specific_time=has_specific_time,
            recurrence_rule=recurrence_rule,
        ))

    async def reorder(self, source_id: uuid.UUID, destination_id: uuid.UUID, visible_ids: Optional[list[uuid.UUID]] = None) -> list[Task]:
        """Drag `source` onto `destination`.

        `visible_ids` is the list as the user sees it; when omitted the
        today view order (sort_order descending) is used.
        """
        async with self.store.writing() as repo:
            if visible_ids is None:
                visible = today_tasks(await repo.all('sort_order', descending=True), self.now())
            else:
                visible = [await self._get(repo, tid) for tid in visible_ids]
            by_id = {t.id: t for t in visible}
            source = by_id.get(source_id) or await self._get(repo, source_id)
            destination = by_id.get(destination_id) or await self._get(repo, destination_id)
            changed = reorder_tasks(visible, source, destination, self.now())
            saved = []
            for task in changed:
                task = await repo.upsert(task)
                saved.append(task)
                await self._push(task)
        return saved

    async def delete(self, task_id: uuid.UUID) -> None:
        async with self.store.writing() as repo:
            task = await self._get(repo, task_id)
            await repo.delete(task)
            self.notifier.cancel(task_id)
            if self.sync is not None:
                try:
                    await self.sync.delete(task_id)
                except RemoteError as e:
                    logger.warning('remote delete of task %s failed: %s', task_id, e)
        logger.info('deleted task %s', task_id)

    async def sync_now(self) -> Optional[SyncReport]:
        if self.sync is None:
            return None
        return await self.sync.force_fetch()
